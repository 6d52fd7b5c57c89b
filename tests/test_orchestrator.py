import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from calmwave.config import EncryptionConfig, SessionConfig
from calmwave.continuity import ContinuityEngine
from calmwave.encryption import EncryptionService
from calmwave.errors import RecordNotFoundError, TransientExternalError, ValidationError
from calmwave.models import EmotionalState, FinalEmotionalState, SessionStatus
from calmwave.orchestrator import (
    DEFAULT_RECOMMENDATION,
    SessionInsights,
    SessionOrchestrator,
    next_session_recommendations,
    recommend_theme,
    summary_text,
)
from calmwave.store import RecordStore
from calmwave.summarizer import default_summary

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)

TRANSCRIPT = (
    "I have been so stressed about work and my boss. "
    "I realized that breathing helps me calm down. "
    "Next time I want to keep working on sleep."
)


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class FailingFinalizeStore(RecordStore):
    def finalize_session(self, session):
        raise TransientExternalError("datastore unavailable")


class ExplodingSummarizer:
    def summarize(self, transcript):
        raise RuntimeError("model timeout")


class FailingProgressEngine(ContinuityEngine):
    def update_user_progress(self, user_id, session_id, summary):
        raise TransientExternalError("user table unavailable")


def _orchestrator(tmp, store=None, summarizer=None, hour=12, clock=None):
    clock = clock or Clock()
    store = store or RecordStore(tmp)
    encryption = EncryptionService.from_config(
        EncryptionConfig(local_secret="s3cret", sanitize_transcripts=True)
    )
    continuity = ContinuityEngine(store, now=clock)
    orchestrator = SessionOrchestrator(
        store,
        encryption,
        continuity,
        summarizer=summarizer,
        config=SessionConfig(),
        now=clock,
        local_hour=lambda: hour,
    )
    return orchestrator, clock


def _state(mood=4, stress=8, anxiety=8):
    return EmotionalState(initial_mood=mood, stress_level=stress, anxiety_level=anxiety)


def test_theme_rules_in_order():
    assert recommend_theme(_state(4, 8, 8), 12) == "ocean-calm"
    assert recommend_theme(_state(2, 8, 1), 22) == "ocean-calm"
    assert recommend_theme(_state(3, 2, 2), 22) == "sunset-warmth"
    assert recommend_theme(_state(6, 2, 2), 18) == "moonlight-serenity"
    assert recommend_theme(_state(6, 2, 2), 6) == "moonlight-serenity"
    assert recommend_theme(_state(6, 2, 2), 12) == "forest-peace"
    assert recommend_theme(_state(6, 2, 2), 12, preferred_theme="ocean-calm") == "ocean-calm"


def test_initialize_creates_open_session():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        result = orchestrator.initialize_session("u1", _state())
        assert result.recommended_theme == "ocean-calm"
        assert not result.user_context.is_returning_user
        assert "New user" in result.personalized_context_summary
        session = orchestrator.store.get_session(result.session_id)
        assert session.is_open
        assert session.duration_seconds is None
        assert session.emotional_state.final_mood is None
        assert orchestrator.store.get_user("u1").total_sessions == 0

def test_initialize_rejects_missing_user():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        with pytest.raises(ValidationError):
            orchestrator.initialize_session("", _state())


def test_complete_with_consent():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        clock.now = NOW + timedelta(minutes=20)

        result = orchestrator.complete_session(
            session_id, "u1", TRANSCRIPT, FinalEmotionalState(final_mood=7), user_consent=True
        )

        assert "Continue with current approach" in result.recommendations
        assert "Build on recent breakthroughs and insights" in result.recommendations
        assert "work" in result.summary.key_topics
        assert result.progress_updated

        session = orchestrator.store.get_session(session_id)
        assert session.end_time == clock.now
        assert session.duration_seconds == 1200
        assert session.emotional_state.final_mood == 7
        assert session.status == SessionStatus.COMPLETED
        assert "stressed" in session.emotional_state.dominant_emotions
        assert orchestrator.read_transcript(session_id) == TRANSCRIPT
        assert orchestrator.store.get_user("u1").total_sessions == 1


def test_complete_without_consent_uses_default_summary():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        clock.now = NOW + timedelta(minutes=5)

        result = orchestrator.complete_session(
            session_id, "u1", TRANSCRIPT, FinalEmotionalState(final_mood=7), user_consent=False
        )

        assert result.summary == default_summary()
        session = orchestrator.store.get_session(session_id)
        assert session.transcript_ciphertext is None
        assert session.emotional_state.dominant_emotions == ()
        assert not any(r.startswith("Follow up on") for r in result.recommendations)
        assert session.conversation_summary == summary_text(default_summary())
        assert "boss" not in session.conversation_summary
        assert orchestrator.read_transcript(session_id) is None


def test_summary_failure_degrades_to_default():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp, summarizer=ExplodingSummarizer())
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        result = orchestrator.complete_session(
            session_id, "u1", TRANSCRIPT, FinalEmotionalState(final_mood=5), user_consent=True
        )
        assert result.summary == default_summary()
        assert orchestrator.read_transcript(session_id) == TRANSCRIPT
        session = orchestrator.store.get_session(session_id)
        assert "supported" not in session.emotional_state.dominant_emotions


def test_transcript_is_sanitized_before_storage():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        orchestrator.complete_session(
            session_id,
            "u1",
            "Email me at sam@example.com next time.",
            FinalEmotionalState(final_mood=5),
            user_consent=True,
        )
        assert orchestrator.read_transcript(session_id) == "Email me at [EMAIL] next time."


def test_completion_is_atomic_when_persistence_fails():
    with tempfile.TemporaryDirectory() as tmp:
        store = FailingFinalizeStore(tmp)
        orchestrator, clock = _orchestrator(tmp, store=store)
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        with pytest.raises(TransientExternalError):
            orchestrator.complete_session(
                session_id, "u1", TRANSCRIPT, FinalEmotionalState(final_mood=7), user_consent=True
            )
        session = store.get_session(session_id)
        assert session.end_time is None
        assert session.duration_seconds is None
        assert session.emotional_state.final_mood is None
        assert store.get_user("u1").total_sessions == 0


def test_progress_failure_does_not_undo_completion():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        orchestrator.continuity = FailingProgressEngine(orchestrator.store, now=clock)
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        clock.now = NOW + timedelta(minutes=10)

        result = orchestrator.complete_session(
            session_id, "u1", TRANSCRIPT, FinalEmotionalState(final_mood=7), user_consent=True
        )

        assert not result.progress_updated
        assert "work" in result.summary.key_topics
        session = orchestrator.store.get_session(session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.duration_seconds == 600
        assert orchestrator.store.get_user("u1").total_sessions == 0


def test_default_summaries_leave_no_continuity_notes():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        first = orchestrator.initialize_session("u1", _state()).session_id
        orchestrator.complete_session(first, "u1", TRANSCRIPT, FinalEmotionalState(final_mood=6))

        clock.now = NOW + timedelta(days=1)
        second = orchestrator.initialize_session("u1", _state())
        assert second.user_context.is_returning_user
        assert second.user_context.continuity_notes == []
        assert "Continuity notes" not in second.personalized_context_summary

def test_cannot_complete_twice_or_for_another_user():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        with pytest.raises(RecordNotFoundError):
            orchestrator.complete_session(session_id, "u2", "", FinalEmotionalState(final_mood=5))
        orchestrator.complete_session(session_id, "u1", "", FinalEmotionalState(final_mood=5))
        with pytest.raises(ValidationError):
            orchestrator.complete_session(session_id, "u1", "", FinalEmotionalState(final_mood=6))


def test_reap_abandoned_sessions():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        stale = orchestrator.initialize_session("u1", _state(mood=5)).session_id
        clock.now = NOW + timedelta(minutes=90)
        fresh = orchestrator.initialize_session("u1", _state(mood=5)).session_id

        assert orchestrator.reap_abandoned() == [stale]
        session = orchestrator.store.get_session(stale)
        assert session.status == SessionStatus.ABANDONED
        assert session.emotional_state.final_mood == 5
        assert session.duration_seconds == 90 * 60
        assert orchestrator.store.get_session(fresh).is_open
        assert orchestrator.reap_abandoned() == []
        assert orchestrator.abandon_session(stale).status == SessionStatus.ABANDONED


def test_returning_user_gets_insights():
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp)
        session_id = orchestrator.initialize_session("u1", _state()).session_id
        clock.now = NOW + timedelta(minutes=30)
        orchestrator.complete_session(
            session_id, "u1", TRANSCRIPT, FinalEmotionalState(final_mood=7), user_consent=True
        )

        clock.now = NOW + timedelta(days=1)
        second = orchestrator.initialize_session("u1", _state(mood=6, stress=3, anxiety=3))
        assert second.user_context.is_returning_user
        assert second.personalized_context_summary.startswith("Returning user with 1 previous sessions.")

        insights = orchestrator.get_session_insights("u1")
        assert len(insights.recent_sessions) == 2
        assert insights.mood_trend == "improving"
        assert insights.average_improvement == pytest.approx(3.0)


def test_insights_never_raise():
    class BrokenStore(RecordStore):
        def sessions_by_user(self, user_id, limit=50):
            raise TransientExternalError("datastore down")

    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, clock = _orchestrator(tmp, store=BrokenStore(tmp))
        assert orchestrator.get_session_insights("u1") == SessionInsights()


def test_recommendation_rules():
    summary = default_summary()
    recs = next_session_recommendations(summary, initial_mood=6, final_mood=5)
    assert "Explore alternative coping strategies" in recs
    assert not any(r.startswith("Follow up on") for r in recs)
    derived = replace(
        default_summary(),
        session_summary="Session about work.",
        continuity_notes="Next time talk about sleep.",
    )
    assert "Follow up on: Next time talk about sleep." in next_session_recommendations(derived, 5, 6)
    assert next_session_recommendations(None, 5, 6) == [DEFAULT_RECOMMENDATION]
