import tempfile

from calmwave.config import EncryptionConfig
from calmwave.continuity import ContinuityEngine
from calmwave.encryption import EncryptionService
from calmwave.errors import TransientExternalError
from calmwave.orchestrator import SessionOrchestrator
from calmwave.service import (
    COMPLETE_FAILED,
    INVALID_REQUEST,
    SessionEventService,
)
from calmwave.store import RecordStore


class FailingFinalizeStore(RecordStore):
    def finalize_session(self, session):
        raise TransientExternalError("disk full at /var/lib/calmwave/Sessions")


class FailingProgressEngine(ContinuityEngine):
    def update_user_progress(self, user_id, session_id, summary):
        raise TransientExternalError("user table unavailable")


def _service(tmp, store=None):
    store = store or RecordStore(tmp)
    encryption = EncryptionService.from_config(EncryptionConfig(local_secret="s3cret"))
    orchestrator = SessionOrchestrator(
        store, encryption, ContinuityEngine(store), local_hour=lambda: 12
    )
    return SessionEventService(orchestrator)


def _start(service, user_id="u1", mood=4, stress=8, anxiety=8):
    return service.start_session(
        user_id, {"initial_mood": mood, "stress_level": stress, "anxiety_level": anxiety}
    )


def test_start_session_success():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        response = _start(service)
        assert response["success"] is True
        assert response["recommended_theme"] == "ocean-calm"
        assert response["is_returning_user"] is False
        assert response["session_id"]
        assert service.orchestrator.store.get_user("u1") is not None


def test_start_session_rejects_invalid_input():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        assert _start(service, mood=11) == {"success": False, "error": INVALID_REQUEST}
        assert _start(service, user_id="") == {"success": False, "error": INVALID_REQUEST}


def test_complete_session_success():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        session_id = _start(service)["session_id"]
        response = service.complete_session(
            session_id,
            "u1",
            "I realized walking outside helps.",
            {"final_mood": 7},
            {"session_quality": 0.8, "interruption_count": 1},
            user_consent=True,
        )
        assert response["success"] is True
        assert "Continue with current approach" in response["recommendations"]
        assert response["summary"]["therapeutic_progress"]["breakthroughs"]


def test_complete_session_failure_is_generic():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp, store=FailingFinalizeStore(tmp))
        session_id = _start(service)["session_id"]
        response = service.complete_session(session_id, "u1", "", {"final_mood": 7})
        assert response == {"success": False, "error": COMPLETE_FAILED}
        assert "/var/lib" not in response["error"]


def test_complete_session_unknown_metric_is_invalid():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        session_id = _start(service)["session_id"]
        response = service.complete_session(
            session_id, "u1", "", {"final_mood": 7}, {"heart_rate": 60}
        )
        assert response == {"success": False, "error": INVALID_REQUEST}


def test_malformed_payloads_are_rejected():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        invalid = {"success": False, "error": INVALID_REQUEST}
        assert service.start_session("u1", ["initial_mood", 4]) == invalid

        session_id = _start(service)["session_id"]
        assert service.complete_session(session_id, "u1", 42, {"final_mood": 7}) == invalid
        assert service.complete_session(session_id, "u1", "", "final_mood=7") == invalid
        assert (
            service.complete_session(
                session_id, "u1", "", {"final_mood": 7}, {"voice_stress_indicators": [1, 2]}
            )
            == invalid
        )
        assert service.orchestrator.store.get_session(session_id).is_open


def test_unexpected_errors_still_get_generic_message():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        session_id = _start(service)["session_id"]
        response = service.complete_session(
            session_id, "u1", "", {"final_mood": 7, "dominant_emotions": 5}
        )
        assert response == {"success": False, "error": COMPLETE_FAILED}
        assert service.orchestrator.store.get_session(session_id).is_open


def test_progress_failure_still_reports_success():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        session_id = _start(service)["session_id"]
        service.orchestrator.continuity = FailingProgressEngine(service.orchestrator.store)
        response = service.complete_session(session_id, "u1", "", {"final_mood": 7})
        assert response["success"] is True
        assert response["progress_updated"] is False

def test_context_and_dashboard():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        session_id = _start(service)["session_id"]
        service.complete_session(session_id, "u1", "", {"final_mood": 6})

        context = service.get_user_context("u1")
        assert context["success"] is True
        assert context["is_returning_user"] is True
        assert context["total_sessions"] == 1
        assert context["greeting"].startswith("Welcome back!")

        dashboard = service.get_dashboard("u1")
        assert dashboard["success"] is True
        assert len(dashboard["recent_sessions"]) == 1
        assert dashboard["mood_trend"] == "improving"


def test_abandon_session():
    with tempfile.TemporaryDirectory() as tmp:
        service = _service(tmp)
        session_id = _start(service)["session_id"]
        assert service.abandon_session(session_id) == {"success": True, "session_id": session_id}
        assert service.abandon_session("missing") == {"success": False, "session_id": "missing"}
