from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict

from .events import Identity
from .sqlite_backend import SQLiteBackend

ONLINE = "online"
OFFLINE = "offline"


@dataclass
class UserStatus:
    user_id: Identity
    status: str
    last_seen: str | None


class InMemoryStatusStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: Dict[Identity, UserStatus] = {}

    def set_presence(self, user_id: Identity, status: str, last_seen: str) -> None:
        with self._lock:
            self._statuses[user_id] = UserStatus(user_id=user_id, status=status, last_seen=last_seen)

    def get_presence(self, user_id: Identity) -> UserStatus | None:
        with self._lock:
            return self._statuses.get(user_id)


class SQLiteStatusStore:
    """Persists presence onto the ``users`` table, creating the row on first sight."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def set_presence(self, user_id: Identity, status: str, last_seen: str) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO users (id, status, last_seen) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET status = excluded.status, last_seen = excluded.last_seen
                """,
                (user_id, status, last_seen),
            )

    def get_presence(self, user_id: Identity) -> UserStatus | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT id, status, last_seen FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return UserStatus(user_id=row["id"], status=row["status"], last_seen=row["last_seen"])
