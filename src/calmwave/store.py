"""Record storage for users and sessions.

Records use the datastore layout: camelCase attributes, nested objects as JSON
strings, and ``GSI1PK``/``GSI1SK`` attributes for the secondary indexes
(users by ``(isAnonymous, lastActiveAt)``, sessions by ``(userId, startTime)``).
This implementation keeps one JSON file per record under the base directory.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .errors import ConflictError, DataIntegrityError, TransientExternalError
from .models import Session, User

logger = logging.getLogger("calmwave")

USERS_TABLE = "users"
SESSIONS_TABLE = "sessions"


@dataclass(frozen=True)
class ChangeRecord:
    table: str
    key: str
    old_image: Optional[Dict[str, Any]]
    new_image: Optional[Dict[str, Any]]
    at: datetime


ChangeListener = Callable[[ChangeRecord], None]


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def ensure_structure(base_dir: str) -> dict:
    root = base_dir or os.getcwd()
    paths = {
        "root": root,
        USERS_TABLE: os.path.join(root, "Users"),
        SESSIONS_TABLE: os.path.join(root, "Sessions"),
        "logs": os.path.join(root, "Logs"),
    }
    for path in paths.values():
        ensure_dir(path)
    return paths


def _safe_key(key: str) -> str:
    if not key or any(ch in key for ch in "/\\") or key.startswith("."):
        raise DataIntegrityError(f"Invalid record key: {key!r}")
    return key


class RecordStore:
    def __init__(self, base_dir: str) -> None:
        self.paths = ensure_structure(base_dir)
        self._lock = threading.RLock()
        self._listeners: Dict[str, ChangeListener] = {}

    def subscribe(self, purpose: str, listener: ChangeListener) -> None:
        if purpose in self._listeners:
            raise ValueError(f"A change listener is already registered for {purpose!r}.")
        self._listeners[purpose] = listener

    def _path(self, table: str, key: str) -> str:
        return os.path.join(self.paths[table], f"{_safe_key(key)}.json")

    def _read(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(table, key)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            raise DataIntegrityError(f"Corrupt {table} record {key}.") from exc
        except OSError as exc:
            raise TransientExternalError(f"Unable to read {table} record {key}.") from exc

    def _write(self, table: str, key: str, record: Dict[str, Any]) -> None:
        old = self._read(table, key)
        path = self._path(table, key)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.paths[table], suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle, indent=2)
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as exc:
            raise TransientExternalError(f"Unable to write {table} record {key}.") from exc
        except (TypeError, ValueError) as exc:
            raise DataIntegrityError(f"{table} record {key} is not serializable.") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        self._emit(ChangeRecord(table, key, old, record, datetime.now(timezone.utc)))

    def _emit(self, change: ChangeRecord) -> None:
        for purpose, listener in list(self._listeners.items()):
            try:
                listener(change)
            except Exception:
                logger.exception("Change listener %r failed.", purpose)

    def _scan(self, table: str) -> List[Dict[str, Any]]:
        records = []
        directory = self.paths[table]
        try:
            names = sorted(os.listdir(directory))
        except OSError as exc:
            raise TransientExternalError(f"Unable to list {table}.") from exc
        for name in names:
            if name.endswith(".json"):
                record = self._read(table, name[: -len(".json")])
                if record is not None:
                    records.append(record)
        return records

    # Users

    def create_user(self, user: User) -> User:
        with self._lock:
            if self._read(USERS_TABLE, user.user_id) is not None:
                raise ConflictError(f"User {user.user_id} already exists.")
            self._write(USERS_TABLE, user.user_id, user.to_record())
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        record = self._read(USERS_TABLE, user_id)
        return User.from_record(record) if record else None

    def save_user(self, user: User) -> User:
        with self._lock:
            self._write(USERS_TABLE, user.user_id, user.to_record())
        return user

    def users_by_activity(self, is_anonymous: bool = True, limit: int = 50) -> List[User]:
        wanted = str(is_anonymous).lower()
        records = [r for r in self._scan(USERS_TABLE) if r.get("GSI1PK") == wanted]
        records.sort(key=lambda r: r.get("GSI1SK") or "", reverse=True)
        return [User.from_record(r) for r in records[:limit]]

    # Sessions

    def create_session(self, session: Session) -> Session:
        if not session.is_open:
            raise DataIntegrityError("New sessions must not have an end time.")
        with self._lock:
            if self._read(SESSIONS_TABLE, session.session_id) is not None:
                raise ConflictError(f"Session {session.session_id} already exists.")
            self._write(SESSIONS_TABLE, session.session_id, session.to_record())
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        record = self._read(SESSIONS_TABLE, session_id)
        return Session.from_record(record) if record else None

    def finalize_session(self, session: Session) -> Session:
        """Single conditional write: the stored session must still be open."""
        if session.is_open:
            raise DataIntegrityError("A finalized session needs an end time.")
        record = session.to_record()
        with self._lock:
            current = self._read(SESSIONS_TABLE, session.session_id)
            if current is None:
                raise ConflictError(f"Session {session.session_id} does not exist.")
            if current.get("endTime"):
                raise ConflictError(f"Session {session.session_id} is already finalized.")
            self._write(SESSIONS_TABLE, session.session_id, record)
        return session

    def sessions_by_user(self, user_id: str, limit: int = 50) -> List[Session]:
        records = [r for r in self._scan(SESSIONS_TABLE) if r.get("GSI1PK") == user_id]
        records.sort(key=lambda r: r.get("GSI1SK") or "", reverse=True)
        return [Session.from_record(r) for r in records[:limit]]

    def open_sessions(self) -> List[Session]:
        return [
            Session.from_record(r)
            for r in self._scan(SESSIONS_TABLE)
            if not r.get("endTime")
        ]
