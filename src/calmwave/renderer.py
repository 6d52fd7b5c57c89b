"""Markdown rendering of a user's session dashboard."""

from __future__ import annotations

from typing import List, Optional

from .orchestrator import SessionInsights


def _yaml_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f"\"{escaped}\""


def _clean_text(value: str) -> str:
    return " ".join(value.split())


def _format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"


def _mood_change(initial: Optional[int], final: Optional[int]) -> str:
    if final is None:
        return f"{initial} -> ?"
    delta = final - initial
    sign = "+" if delta > 0 else ""
    return f"{initial} -> {final} ({sign}{delta})"


def render_dashboard(
    user_id: str,
    insights: SessionInsights,
    date: str,
    greeting: Optional[str] = None,
) -> str:
    lines: List[str] = []
    lines.append("---")
    lines.append("schema: 1")
    lines.append(f"title: {_yaml_quote(f'Wellbeing dashboard {date}')}")
    lines.append(f"date: {_yaml_quote(date)}")
    lines.append(f"user_id: {_yaml_quote(user_id)}")
    if insights.mood_trend:
        lines.append(f"mood_trend: {insights.mood_trend}")
    if insights.consistency_score is not None:
        lines.append(f"consistency_score: {insights.consistency_score:.2f}")
    lines.append("---")
    lines.append("")
    lines.append("# Wellbeing dashboard")
    lines.append("")
    if greeting:
        lines.append(_clean_text(greeting))
        lines.append("")

    lines.append("## Trends")
    lines.append("")
    if insights.mood_trend is None:
        lines.append("No trend data available yet.")
    else:
        lines.append(f"- Mood trend: {insights.mood_trend}")
        if insights.average_improvement is not None:
            lines.append(f"- Average mood change: {insights.average_improvement:+.1f}")
        if insights.consistency_score is not None:
            lines.append(f"- Consistency: {round(insights.consistency_score * 100)}%")
    lines.append("")

    lines.append("## Recent sessions")
    lines.append("")
    if not insights.recent_sessions:
        lines.append("No sessions recorded yet.")
    else:
        lines.append("| Date | Duration | Mood | Status |")
        lines.append("| --- | --- | --- | --- |")
        for item in insights.recent_sessions:
            lines.append(
                f"| {item['date'][:10]} | {_format_duration(item.get('duration_seconds'))} "
                f"| {_mood_change(item['initial_mood'], item.get('final_mood'))} "
                f"| {item.get('status', '')} |"
            )
        summaries = [i for i in insights.recent_sessions if i.get("summary")]
        if summaries:
            lines.append("")
            for item in summaries:
                lines.append(f"- {item['date'][:10]}: {_clean_text(item['summary'])}")
    lines.append("")

    if insights.recommendations:
        lines.append("## Next steps")
        lines.append("")
        for rec in insights.recommendations:
            lines.append(f"- {_clean_text(rec)}")
        lines.append("")

    return "\n".join(lines)
