"""Session lifecycle: initialization, completion and advisory insights."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .config import SessionConfig
from .continuity import ContinuityEngine, SessionContext, UserContext, consistency_score, mood_trend
from .encryption import EncryptionService, new_identifier
from .errors import AdvisoryComputationError, RecordNotFoundError, ValidationError
from .models import (
    EmotionalState,
    FinalEmotionalState,
    Session,
    SessionStatus,
    TherapeuticMetrics,
)
from .store import RecordStore
from .summarizer import (
    KeywordSummarizer,
    TranscriptSummarizer,
    TranscriptSummary,
    default_summary,
    is_default_summary,
)

logger = logging.getLogger("calmwave")

CALMING_THEME = "ocean-calm"
UPLIFTING_THEME = "sunset-warmth"
GENTLE_THEME = "moonlight-serenity"
HIGH_DISTRESS = 7
LOW_MOOD = 4
EVENING_START_HOUR = 18
MORNING_END_HOUR = 6

DEFAULT_RECOMMENDATION = "Continue regular sessions for consistent progress"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionInitialization:
    session_id: str
    user_context: UserContext
    session_context: SessionContext
    personalized_context_summary: str
    recommended_theme: str


@dataclass
class SessionCompletion:
    session_id: str
    summary: TranscriptSummary
    recommendations: List[str]
    progress_updated: bool = True


@dataclass
class SessionInsights:
    recent_sessions: List[dict] = field(default_factory=list)
    mood_trend: Optional[str] = None
    average_improvement: Optional[float] = None
    consistency_score: Optional[float] = None
    recommendations: List[str] = field(default_factory=list)


def recommend_theme(
    state: EmotionalState,
    local_hour: int,
    preferred_theme: Optional[str] = None,
    default_theme: str = "forest-peace",
) -> str:
    """First matching rule wins, evaluated in this order."""
    if state.stress_level > HIGH_DISTRESS or state.anxiety_level > HIGH_DISTRESS:
        return CALMING_THEME
    if state.initial_mood < LOW_MOOD:
        return UPLIFTING_THEME
    if local_hour >= EVENING_START_HOUR or local_hour <= MORNING_END_HOUR:
        return GENTLE_THEME
    return preferred_theme or default_theme


def next_session_recommendations(
    summary: Optional[TranscriptSummary],
    initial_mood: int,
    final_mood: Optional[int],
) -> List[str]:
    if summary is None:
        return [DEFAULT_RECOMMENDATION]
    recommendations = []
    progress = summary.therapeutic_progress
    if progress.challenges:
        recommendations.append("Focus on addressing ongoing challenges")
    if progress.breakthroughs:
        recommendations.append("Build on recent breakthroughs and insights")
    if final_mood is not None and final_mood > initial_mood:
        recommendations.append("Continue with current approach")
    else:
        recommendations.append("Explore alternative coping strategies")
    if summary.continuity_notes and not is_default_summary(summary):
        recommendations.append("Follow up on: " + summary.continuity_notes)
    return recommendations or [DEFAULT_RECOMMENDATION]


def summary_text(summary: TranscriptSummary) -> str:
    """Compact text stored on the session record and scanned by continuity."""
    parts = [summary.session_summary]
    progress = summary.therapeutic_progress
    if progress.breakthroughs:
        parts.append("Breakthrough: " + "; ".join(progress.breakthroughs))
    if progress.challenges:
        parts.append("Challenge: " + "; ".join(progress.challenges))
    if summary.continuity_notes:
        parts.append("Follow up: " + summary.continuity_notes)
    return " ".join(parts)


class SessionOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        encryption: EncryptionService,
        continuity: ContinuityEngine,
        summarizer: Optional[TranscriptSummarizer] = None,
        config: Optional[SessionConfig] = None,
        now: Callable[[], datetime] = _utcnow,
        local_hour: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.encryption = encryption
        self.continuity = continuity
        self.summarizer = summarizer or KeywordSummarizer()
        self.config = config or SessionConfig()
        self._now = now
        self._local_hour = local_hour or (lambda: datetime.now().hour)

    def initialize_session(self, user_id: str, initial_state: EmotionalState) -> SessionInitialization:
        if not user_id:
            raise ValidationError("user_id is required.")
        if initial_state.final_mood is not None:
            raise ValidationError("A new session cannot carry a final mood.")

        self.continuity.ensure_user(user_id)
        user_context = self.continuity.get_user_context(user_id)
        session_context = self.continuity.get_session_context(user_id)

        session = Session(
            session_id=new_identifier(),
            user_id=user_id,
            start_time=self._now(),
            emotional_state=initial_state,
            therapeutic_metrics=TherapeuticMetrics(),
        )
        self.store.create_session(session)

        preferred = user_context.user.preferences.theme if user_context.user else None
        theme = recommend_theme(
            initial_state,
            self._local_hour(),
            preferred_theme=preferred,
            default_theme=self.config.default_theme,
        )
        logger.info(
            "Session %s initialized for %s user %s (theme %s)",
            session.session_id,
            "returning" if user_context.is_returning_user else "new",
            user_id,
            theme,
        )
        return SessionInitialization(
            session_id=session.session_id,
            user_context=user_context,
            session_context=session_context,
            personalized_context_summary=self.continuity.build_context_summary(
                user_context, session_context
            ),
            recommended_theme=theme,
        )

    def _load_open_session(self, session_id: str, user_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise RecordNotFoundError(f"Session {session_id} not found for user {user_id}.")
        if not session.is_open:
            raise ValidationError(f"Session {session_id} is already finalized.")
        return session

    def _summarize(self, transcript: str) -> Optional[TranscriptSummary]:
        """Derived summary, or None when derivation failed."""
        try:
            return self.summarizer.summarize(transcript)
        except Exception as exc:
            error = exc if isinstance(exc, AdvisoryComputationError) else AdvisoryComputationError(str(exc))
            logger.warning("Summary derivation failed (%s); using default summary.", error)
            return None

    def complete_session(
        self,
        session_id: str,
        user_id: str,
        transcript: str,
        final_state: FinalEmotionalState,
        metrics: Optional[TherapeuticMetrics] = None,
        user_consent: bool = False,
    ) -> SessionCompletion:
        session = self._load_open_session(session_id, user_id)

        derived = None
        envelope = None
        if user_consent and transcript:
            derived = self._summarize(transcript)
            envelope = self.encryption.encrypt(transcript)
        summary = derived or default_summary()

        end_time = self._now()
        duration = max(0, int((end_time - session.start_time).total_seconds()))
        # Only a summary of the user's own words may add emotions to the record.
        emotions = set(final_state.dominant_emotions)
        if derived is not None:
            emotions |= set(derived.emotional_insights.dominant_emotions)
        completed = replace(
            session,
            end_time=end_time,
            duration_seconds=duration,
            emotional_state=replace(
                session.emotional_state,
                final_mood=final_state.final_mood,
                calming_effectiveness=final_state.calming_effectiveness,
                dominant_emotions=tuple(emotions),
            ),
            therapeutic_metrics=metrics or TherapeuticMetrics(),
            transcript_ciphertext=envelope,
            conversation_summary=summary_text(summary),
            status=SessionStatus.COMPLETED,
        )
        self.store.finalize_session(completed)
        progress_updated = self._update_progress(user_id, session_id, summary)

        recommendations = next_session_recommendations(
            summary, session.emotional_state.initial_mood, final_state.final_mood
        )
        logger.info("Session %s completed (%ds)", session_id, duration)
        return SessionCompletion(
            session_id=session_id,
            summary=summary,
            recommendations=recommendations,
            progress_updated=progress_updated,
        )

    def _update_progress(
        self, user_id: str, session_id: str, summary: Optional[TranscriptSummary]
    ) -> bool:
        # The session is already final; progress is recounted on the next update.
        try:
            self.continuity.update_user_progress(user_id, session_id, summary)
        except Exception:
            logger.exception("Progress update failed for user %s after session %s.", user_id, session_id)
            return False
        return True

    def abandon_session(self, session_id: str) -> Optional[Session]:
        """Finalize an open session whose connection dropped. No transcript is kept."""
        session = self.store.get_session(session_id)
        if session is None or not session.is_open:
            return session
        end_time = self._now()
        abandoned = replace(
            session,
            end_time=end_time,
            duration_seconds=max(0, int((end_time - session.start_time).total_seconds())),
            emotional_state=replace(
                session.emotional_state, final_mood=session.emotional_state.initial_mood
            ),
            conversation_summary=default_summary().session_summary,
            status=SessionStatus.ABANDONED,
        )
        self.store.finalize_session(abandoned)
        self._update_progress(session.user_id, session_id, None)
        logger.info("Session %s abandoned after %ds", session_id, abandoned.duration_seconds)
        return abandoned

    def reap_abandoned(self, now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or self._now()) - timedelta(seconds=self.config.abandon_after_seconds)
        reaped = []
        for session in self.store.open_sessions():
            if session.start_time <= cutoff:
                self.abandon_session(session.session_id)
                reaped.append(session.session_id)
        return reaped

    def read_transcript(self, session_id: str) -> Optional[str]:
        session = self.store.get_session(session_id)
        if session is None:
            raise RecordNotFoundError(f"Session {session_id} not found.")
        if session.transcript_ciphertext is None:
            return None
        return self.encryption.decrypt(session.transcript_ciphertext)

    def get_session_insights(self, user_id: str, limit: Optional[int] = None) -> SessionInsights:
        try:
            sessions = self.store.sessions_by_user(user_id, limit or self.config.insights_limit)
            finished = [s for s in sessions if not s.is_open]
            context = self.continuity.get_user_context(user_id)
            return SessionInsights(
                recent_sessions=[
                    {
                        "session_id": s.session_id,
                        "date": s.start_time.isoformat(),
                        "duration_seconds": s.duration_seconds,
                        "initial_mood": s.emotional_state.initial_mood,
                        "final_mood": s.emotional_state.final_mood,
                        "summary": s.conversation_summary,
                        "quality": s.therapeutic_metrics.session_quality,
                        "status": s.status.value,
                    }
                    for s in sessions
                ],
                mood_trend=mood_trend(finished),
                average_improvement=context.recent_progress.average_mood_improvement,
                consistency_score=consistency_score(finished),
                recommendations=list(context.recommendations),
            )
        except Exception:
            logger.exception("Session insights unavailable for %s.", user_id)
            return SessionInsights()
