import json
import os
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from calmwave.errors import ConflictError, DataIntegrityError
from calmwave.models import EmotionalState, Session, SessionStatus, User
from calmwave.store import RecordStore, ensure_structure

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _session(session_id, user_id="u1", start=START):
    return Session(
        session_id=session_id,
        user_id=user_id,
        start_time=start,
        emotional_state=EmotionalState(initial_mood=4, stress_level=5, anxiety_level=6),
    )


def _finished(session, final_mood=7):
    return replace(
        session,
        end_time=session.start_time + timedelta(minutes=20),
        duration_seconds=1200,
        emotional_state=replace(session.emotional_state, final_mood=final_mood),
        status=SessionStatus.COMPLETED,
    )


def test_ensure_structure_creates_folders():
    with tempfile.TemporaryDirectory() as tmp:
        paths = ensure_structure(tmp)
        for key in ("users", "sessions", "logs"):
            assert os.path.isdir(paths[key])


def test_user_record_layout():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        store.create_user(User("u1", START, START, is_anonymous=True))
        with open(os.path.join(tmp, "Users", "u1.json"), "r", encoding="utf-8") as handle:
            record = json.load(handle)
        assert record["isAnonymous"] == "true"
        assert record["GSI1PK"] == "true"
        assert record["GSI1SK"] == START.isoformat()
        assert isinstance(record["preferences"], str)
        assert store.get_user("u1").user_id == "u1"
        with pytest.raises(ConflictError):
            store.create_user(User("u1", START, START))


def test_session_record_layout_and_roundtrip():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        store.create_session(_session("s1"))
        with open(os.path.join(tmp, "Sessions", "s1.json"), "r", encoding="utf-8") as handle:
            record = json.load(handle)
        assert record["GSI1PK"] == "u1"
        assert record["endTime"] is None
        assert json.loads(record["emotionalState"])["initialMood"] == 4
        loaded = store.get_session("s1")
        assert loaded.is_open
        assert loaded.emotional_state.stress_level == 5


def test_finalize_is_conditional_on_open_session():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        session = store.create_session(_session("s1"))
        store.finalize_session(_finished(session))
        loaded = store.get_session("s1")
        assert loaded.end_time is not None
        assert loaded.duration_seconds == 1200
        assert loaded.emotional_state.final_mood == 7
        with pytest.raises(ConflictError):
            store.finalize_session(_finished(session, final_mood=2))
        assert store.get_session("s1").emotional_state.final_mood == 7


def test_finalize_rejects_partial_completion():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        session = store.create_session(_session("s1"))
        partial = replace(session, end_time=START + timedelta(minutes=5))
        with pytest.raises(DataIntegrityError):
            store.finalize_session(partial)
        assert store.get_session("s1").is_open


def test_sessions_by_user_newest_first():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        for day in range(3):
            store.create_session(_session(f"s{day}", start=START + timedelta(days=day)))
        store.create_session(_session("other", user_id="u2"))
        sessions = store.sessions_by_user("u1")
        assert [s.session_id for s in sessions] == ["s2", "s1", "s0"]
        assert len(store.sessions_by_user("u1", limit=2)) == 2
        assert len(store.open_sessions()) == 4


def test_users_by_activity():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        store.create_user(User("old", START, START))
        store.create_user(User("new", START, START + timedelta(days=1)))
        store.create_user(User("named", START, START, is_anonymous=False))
        assert [u.user_id for u in store.users_by_activity(True)] == ["new", "old"]
        assert [u.user_id for u in store.users_by_activity(False)] == ["named"]


def test_change_records_are_emitted():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        changes = []
        store.subscribe("audit", changes.append)
        with pytest.raises(ValueError):
            store.subscribe("audit", changes.append)
        session = store.create_session(_session("s1"))
        store.finalize_session(_finished(session))
        assert [c.table for c in changes] == ["sessions", "sessions"]
        assert changes[0].old_image is None
        assert changes[1].old_image["endTime"] is None
        assert changes[1].new_image["endTime"] is not None


def test_corrupt_record_is_a_data_integrity_error():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        with open(os.path.join(tmp, "Sessions", "bad.json"), "w", encoding="utf-8") as handle:
            handle.write("{not json")
        with pytest.raises(DataIntegrityError):
            store.get_session("bad")


def test_unsafe_keys_rejected():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        with pytest.raises(DataIntegrityError):
            store.get_user("../escape")


def test_unserializable_record_leaves_no_temp_file():
    with tempfile.TemporaryDirectory() as tmp:
        store = RecordStore(tmp)
        changes = []
        store.subscribe("audit", changes.append)
        with pytest.raises(DataIntegrityError):
            store._write("users", "u1", {"userId": "u1", "createdAt": object()})
        assert os.listdir(os.path.join(tmp, "Users")) == []
        assert store.get_user("u1") is None
        assert changes == []
