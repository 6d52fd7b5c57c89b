"""Transcript summaries for session records and next-session planning."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Protocol, Tuple

from .errors import AdvisoryComputationError

TOPIC_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "work": ("work", "job", "boss", "deadline", "career", "office"),
    "family": ("family", "mother", "father", "mom", "dad", "sister", "brother", "kids"),
    "relationships": ("partner", "relationship", "friend", "girlfriend", "boyfriend", "wife", "husband"),
    "health": ("health", "doctor", "pain", "illness", "sick"),
    "sleep": ("sleep", "insomnia", "tired", "nightmare", "rest"),
    "money": ("money", "rent", "debt", "bills", "finances"),
}

EMOTION_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "anxious": ("anxious", "anxiety", "nervous", "worried", "panic"),
    "stressed": ("stressed", "stress", "overwhelmed", "pressure"),
    "sad": ("sad", "down", "depressed", "lonely", "hopeless"),
    "angry": ("angry", "frustrated", "annoyed", "furious"),
    "calm": ("calm", "relaxed", "peaceful", "settled"),
    "hopeful": ("hopeful", "better", "optimistic", "grateful", "happy"),
}

COPING_KEYWORDS: Tuple[str, ...] = (
    "breathing", "meditation", "exercise", "music", "nature", "walk", "journal",
)

BREAKTHROUGH_MARKERS = ("realized", "realised", "breakthrough", "insight", "finally", "understand now")
CHALLENGE_MARKERS = ("struggle", "struggling", "difficult", "hard time", "challenge", "can't cope")
CONTINUITY_MARKERS = ("next time", "next session", "follow up", "keep working", "continue")

DEFAULT_SESSION_SUMMARY = "Therapeutic session completed successfully"

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"[a-z']+")


@dataclass
class EmotionalInsights:
    dominant_emotions: List[str] = field(default_factory=list)
    mood_progression: str = ""
    stress_indicators: List[str] = field(default_factory=list)


@dataclass
class TherapeuticProgress:
    breakthroughs: List[str] = field(default_factory=list)
    challenges: List[str] = field(default_factory=list)
    coping_strategies: List[str] = field(default_factory=list)
    recommended_focus: List[str] = field(default_factory=list)


@dataclass
class TranscriptSummary:
    session_summary: str
    key_topics: List[str]
    emotional_insights: EmotionalInsights
    therapeutic_progress: TherapeuticProgress
    continuity_notes: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def default_summary() -> TranscriptSummary:
    """The fixed summary used without consent or when derivation fails."""
    return TranscriptSummary(
        session_summary=DEFAULT_SESSION_SUMMARY,
        key_topics=["emotional-support"],
        emotional_insights=EmotionalInsights(
            dominant_emotions=["supported"],
            mood_progression="Session provided emotional support",
            stress_indicators=[],
        ),
        therapeutic_progress=TherapeuticProgress(recommended_focus=["continued-support"]),
        continuity_notes="Continue therapeutic support in next session",
    )


def is_default_summary(summary: TranscriptSummary) -> bool:
    return summary == default_summary()


class TranscriptSummarizer(Protocol):
    def summarize(self, transcript: str) -> TranscriptSummary:
        ...


def _sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]


def _matching(sentences: List[str], markers: Tuple[str, ...], limit: int = 3) -> List[str]:
    found = [s for s in sentences if any(m in s.lower() for m in markers)]
    return found[:limit]


class KeywordSummarizer:
    """Keyword heuristic summaries; no external model involved."""

    def __init__(self, max_items: int = 3) -> None:
        self.max_items = max_items

    def summarize(self, transcript: str) -> TranscriptSummary:
        if not transcript or not transcript.strip():
            raise AdvisoryComputationError("Transcript is empty.")

        words = _WORD.findall(transcript.lower())
        vocabulary = set(words)
        sentences = _sentences(transcript)

        topics = [t for t, keys in TOPIC_KEYWORDS.items() if vocabulary.intersection(keys)]
        emotion_hits = {
            emotion: sum(words.count(k) for k in keys)
            for emotion, keys in EMOTION_KEYWORDS.items()
        }
        emotions = [
            e for e, n in sorted(emotion_hits.items(), key=lambda item: -item[1]) if n > 0
        ][: self.max_items]
        coping = [c for c in COPING_KEYWORDS if c in vocabulary]
        breakthroughs = _matching(sentences, BREAKTHROUGH_MARKERS, self.max_items)
        challenges = _matching(sentences, CHALLENGE_MARKERS, self.max_items)
        continuity = _matching(sentences, CONTINUITY_MARKERS, 1)

        focus = [f"{topic}-support" for topic in topics[: self.max_items]]
        if challenges and "coping-strategies" not in focus:
            focus.append("coping-strategies")

        minutes = max(1, round(len(words) / 150))
        topic_text = ", ".join(topics) if topics else "general wellbeing"
        return TranscriptSummary(
            session_summary=(
                f"Session of about {minutes} minute(s) discussing {topic_text}."
            ),
            key_topics=topics or ["general-discussion"],
            emotional_insights=EmotionalInsights(
                dominant_emotions=emotions or ["mixed"],
                mood_progression=(
                    "Calmer tone towards the end of the session"
                    if emotions and emotions[0] in ("calm", "hopeful")
                    else "Session completed with user engagement"
                ),
                stress_indicators=[e for e in emotions if e in ("anxious", "stressed")],
            ),
            therapeutic_progress=TherapeuticProgress(
                breakthroughs=breakthroughs,
                challenges=challenges,
                coping_strategies=coping,
                recommended_focus=focus or ["continued-support"],
            ),
            continuity_notes=continuity[0] if continuity else "",
        )
