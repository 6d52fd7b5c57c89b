"""Cross-session continuity: trends, greetings and context for returning users."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .models import Session, SessionStatus, User
from .store import RecordStore
from .summarizer import COPING_KEYWORDS, DEFAULT_SESSION_SUMMARY, TOPIC_KEYWORDS, TranscriptSummary

logger = logging.getLogger("calmwave")

# Mood trend: mean (final - initial) over the newest completed sessions.
TREND_WINDOW = 3
TREND_THRESHOLD = 0.5
# Consistency: GAP_WEIGHT / (1 + variance of day gaps) + ENGAGEMENT_WEIGHT * completion ratio.
GAP_WEIGHT = 0.7
ENGAGEMENT_WEIGHT = 0.3
HISTORY_LIMIT = 20
NOTES_WINDOW = 3

IMPROVING = "improving"
STABLE = "stable"
DECLINING = "declining"

NEW_USER_GREETING = (
    "Welcome. I'm here to provide a safe, supportive space for you to explore "
    "your emotions and find calm."
)
NEW_USER_RECOMMENDATIONS = (
    "Focus on establishing comfort with the interface",
    "Explore initial emotional awareness",
)
DEFAULT_FOCUS = ("emotional-awareness", "stress-management", "coping-strategies")

CONTINUITY_MARKERS = ("continue", "follow up", "next session")
BREAKTHROUGH_MARKERS = ("breakthrough", "insight", "progress")
CHALLENGE_MARKERS = ("challenge", "difficulty", "struggle")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RecentProgress:
    mood_trend: str = STABLE
    consistency_score: float = 0.0
    average_mood_improvement: float = 0.0
    recent_breakthroughs: List[str] = field(default_factory=list)
    ongoing_challenges: List[str] = field(default_factory=list)


@dataclass
class UserContext:
    user_id: str
    user: Optional[User] = None
    is_returning_user: bool = False
    total_sessions: int = 0
    last_session_date: Optional[datetime] = None
    days_since_last_session: Optional[int] = None
    recent_progress: RecentProgress = field(default_factory=RecentProgress)
    continuity_notes: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=lambda: list(NEW_USER_RECOMMENDATIONS))
    personalized_greeting: str = NEW_USER_GREETING


@dataclass
class SessionContext:
    previous_session_summary: Optional[str] = None
    recommended_focus: List[str] = field(default_factory=lambda: list(DEFAULT_FOCUS[:2]))
    typical_mood_range: Tuple[int, int] = (5, 7)
    common_stressors: List[str] = field(default_factory=list)
    effective_coping_strategies: List[str] = field(default_factory=list)
    progress_goals: List[str] = field(default_factory=lambda: ["general-wellbeing"])


def mood_trend(sessions: Sequence[Session]) -> str:
    """Classify the newest completed sessions' mood deltas (sessions newest first)."""
    deltas = [s.mood_delta for s in sessions if s.mood_delta is not None][:TREND_WINDOW]
    if not deltas:
        return STABLE
    average = float(np.mean(deltas))
    if average > TREND_THRESHOLD:
        return IMPROVING
    if average < -TREND_THRESHOLD:
        return DECLINING
    return STABLE


def consistency_score(sessions: Sequence[Session]) -> float:
    """0..1; steadier gaps between sessions and more completed sessions score higher."""
    if len(sessions) < 2:
        return 0.0
    starts = sorted(s.start_time.timestamp() for s in sessions)
    gaps_days = np.diff(starts) / 86400.0
    gap_component = GAP_WEIGHT / (1.0 + float(np.var(gaps_days)))
    completed = sum(1 for s in sessions if s.status == SessionStatus.COMPLETED)
    engagement = ENGAGEMENT_WEIGHT * completed / len(sessions)
    return float(min(max(gap_component + engagement, 0.0), 1.0))


def average_mood_improvement(sessions: Sequence[Session]) -> float:
    deltas = [s.mood_delta for s in sessions if s.mood_delta is not None]
    return float(np.mean(deltas)) if deltas else 0.0


def _summaries(sessions: Sequence[Session], markers: Sequence[str], limit: int) -> List[str]:
    found = []
    for session in sessions[:NOTES_WINDOW]:
        text = session.conversation_summary or ""
        if text.startswith(DEFAULT_SESSION_SUMMARY):
            continue
        if text and any(m in text.lower() for m in markers):
            found.append(text)
    return found[:limit]


def _keywords(text: str, keywords: Sequence[str]) -> List[str]:
    lower = text.lower()
    return [k for k in keywords if k in lower]


def personalized_greeting(
    is_returning_user: bool,
    total_sessions: int,
    days_since_last_session: Optional[int],
    trend: str,
) -> str:
    if not is_returning_user:
        return NEW_USER_GREETING

    greeting = "Welcome back! "
    if days_since_last_session is not None:
        if days_since_last_session == 0:
            greeting += "I see you're returning today. "
        elif days_since_last_session == 1:
            greeting += "It's good to see you again after yesterday's session. "
        elif days_since_last_session <= 7:
            greeting += f"It's been {days_since_last_session} days since our last session. "
        else:
            greeting += f"It's been a while since our last session ({days_since_last_session} days). "

    if total_sessions >= 10:
        greeting += f"You've been consistently working on your wellbeing with {total_sessions} sessions. "
    elif total_sessions >= 5:
        greeting += f"You're building a good routine with {total_sessions} sessions so far. "

    if trend == IMPROVING:
        greeting += "I've noticed positive trends in your progress. "
    elif trend == STABLE:
        greeting += "You've been maintaining steady progress. "

    return greeting + "How are you feeling today?"


def progress_recommendations(trend: str, score: float) -> List[str]:
    recommendations = []
    if trend == DECLINING:
        recommendations.append("Revisit coping strategies that helped in earlier sessions")
    elif trend == IMPROVING:
        recommendations.append("Keep building on recent progress")
    if score < 0.5:
        recommendations.append("Focus on consistency")
    return recommendations or ["Continue regular sessions"]


class ContinuityEngine:
    def __init__(self, store: RecordStore, now: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self._now = now

    def ensure_user(self, user_id: str, is_anonymous: bool = True) -> User:
        user = self.store.get_user(user_id)
        if user is not None:
            return user
        now = self._now()
        user = User(user_id=user_id, created_at=now, last_active_at=now, is_anonymous=is_anonymous)
        logger.info("Creating user record %s", user_id)
        return self.store.create_user(user)

    def get_user_context(self, user_id: str) -> UserContext:
        try:
            return self._build_user_context(user_id)
        except Exception:
            logger.exception("Continuity context unavailable for %s; using defaults.", user_id)
            return UserContext(user_id=user_id)

    def _build_user_context(self, user_id: str) -> UserContext:
        user = self.store.get_user(user_id)
        if user is None:
            return UserContext(user_id=user_id)

        sessions = self.store.sessions_by_user(user_id, HISTORY_LIMIT)
        finished = [s for s in sessions if not s.is_open]
        total = max(user.total_sessions, len(finished))
        is_returning = total > 0

        last_date = finished[0].start_time if finished else None
        days_since = None
        if last_date is not None:
            days_since = max(0, (self._now() - last_date).days)

        trend = mood_trend(finished)
        score = consistency_score(finished)
        return UserContext(
            user_id=user_id,
            user=user,
            is_returning_user=is_returning,
            total_sessions=total,
            last_session_date=last_date,
            days_since_last_session=days_since,
            recent_progress=RecentProgress(
                mood_trend=trend,
                consistency_score=score,
                average_mood_improvement=average_mood_improvement(finished),
                recent_breakthroughs=_summaries(finished, BREAKTHROUGH_MARKERS, 3),
                ongoing_challenges=_summaries(finished, CHALLENGE_MARKERS, 3),
            ),
            continuity_notes=_summaries(finished, CONTINUITY_MARKERS, NOTES_WINDOW),
            recommendations=(
                progress_recommendations(trend, score)
                if is_returning
                else list(NEW_USER_RECOMMENDATIONS)
            ),
            personalized_greeting=personalized_greeting(is_returning, total, days_since, trend),
        )

    def get_session_context(self, user_id: str) -> SessionContext:
        try:
            sessions = [s for s in self.store.sessions_by_user(user_id, 5) if not s.is_open]
        except Exception:
            logger.exception("Session context unavailable for %s; using defaults.", user_id)
            return SessionContext()
        if not sessions:
            return SessionContext()

        moods = [s.emotional_state.initial_mood for s in sessions]
        text = " ".join(s.conversation_summary or "" for s in sessions)
        return SessionContext(
            previous_session_summary=sessions[0].conversation_summary,
            recommended_focus=list(DEFAULT_FOCUS),
            typical_mood_range=(min(moods), max(moods)),
            common_stressors=_keywords(text, tuple(TOPIC_KEYWORDS)),
            effective_coping_strategies=_keywords(text, COPING_KEYWORDS),
        )

    def build_context_summary(self, context: UserContext, session_context: SessionContext) -> str:
        """Plain-text briefing handed to the remote model at session start."""
        if not context.is_returning_user:
            return (
                "New user, first session. Focus on creating a welcoming, safe "
                "environment and understanding their current emotional state."
            )
        progress = context.recent_progress
        low, high = session_context.typical_mood_range
        lines = [
            f"Returning user with {context.total_sessions} previous sessions.",
            f"Last session: {context.days_since_last_session} days ago.",
            f"Mood trend: {progress.mood_trend}; consistency {round(progress.consistency_score * 100)}%.",
            "Previous session summary: "
            + (session_context.previous_session_summary or "not available"),
            f"Typical mood range: {low}-{high}.",
            "Focus areas: " + ", ".join(session_context.recommended_focus),
        ]
        if session_context.common_stressors:
            lines.append("Common stressors: " + ", ".join(session_context.common_stressors))
        if session_context.effective_coping_strategies:
            lines.append(
                "Effective strategies: " + ", ".join(session_context.effective_coping_strategies)
            )
        if context.continuity_notes:
            lines.append("Continuity notes: " + " | ".join(context.continuity_notes))
        return "\n".join(lines)

    def update_user_progress(
        self,
        user_id: str,
        session_id: str,
        summary: Optional[TranscriptSummary],
    ) -> User:
        user = self.ensure_user(user_id)
        sessions = self.store.sessions_by_user(user_id, limit=10_000)
        user.total_sessions = sum(1 for s in sessions if not s.is_open)
        user.last_active_at = self._now()
        self.store.save_user(user)
        logger.info(
            "Updated progress for user %s after session %s (%d sessions%s)",
            user_id,
            session_id,
            user.total_sessions,
            ", summary recorded" if summary else "",
        )
        return user
