from __future__ import annotations

import threading
from typing import Dict, FrozenSet, List

from .events import Identity
from .sqlite_backend import SQLiteBackend

FRIENDSHIP_STATUSES = ("pending", "accepted", "rejected")


class UnknownFriendship(Exception):
    pass


def _check_status(status: str) -> None:
    if status not in FRIENDSHIP_STATUSES:
        raise ValueError(f"invalid friendship status: {status}")


class InMemorySocialGraph:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._edges: Dict[FrozenSet[Identity], str] = {}

    def add_friendship(self, user_id: Identity, friend_id: Identity, status: str = "accepted") -> None:
        _check_status(status)
        if user_id == friend_id:
            raise ValueError("cannot befriend yourself")
        with self._lock:
            self._edges[frozenset((user_id, friend_id))] = status

    def set_friendship_status(self, user_id: Identity, friend_id: Identity, status: str) -> None:
        _check_status(status)
        key = frozenset((user_id, friend_id))
        with self._lock:
            if key not in self._edges:
                raise UnknownFriendship(f"no friendship between {user_id} and {friend_id}")
            self._edges[key] = status

    def friends_of(self, user_id: Identity) -> List[Identity]:
        friends: List[Identity] = []
        with self._lock:
            for pair, status in self._edges.items():
                if status != "accepted" or user_id not in pair:
                    continue
                friends.extend(member for member in pair if member != user_id)
        return friends


class SQLiteSocialGraph:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def add_friendship(self, user_id: Identity, friend_id: Identity, status: str = "accepted") -> None:
        _check_status(status)
        if user_id == friend_id:
            raise ValueError("cannot befriend yourself")
        with self._backend.lock:
            conn = self._backend.connection
            existing = conn.execute(
                """
                SELECT id FROM friendships
                WHERE (user_id = ? AND friend_id = ?) OR (user_id = ? AND friend_id = ?)
                """,
                (user_id, friend_id, friend_id, user_id),
            ).fetchone()
            if existing is not None:
                conn.execute("UPDATE friendships SET status = ? WHERE id = ?", (status, existing["id"]))
                return
            conn.execute(
                "INSERT INTO friendships (user_id, friend_id, status) VALUES (?, ?, ?)",
                (user_id, friend_id, status),
            )

    def set_friendship_status(self, user_id: Identity, friend_id: Identity, status: str) -> None:
        _check_status(status)
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                """
                UPDATE friendships SET status = ?
                WHERE (user_id = ? AND friend_id = ?) OR (user_id = ? AND friend_id = ?)
                """,
                (status, user_id, friend_id, friend_id, user_id),
            )
        if cursor.rowcount == 0:
            raise UnknownFriendship(f"no friendship between {user_id} and {friend_id}")

    def friends_of(self, user_id: Identity) -> List[Identity]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT CASE WHEN user_id = ? THEN friend_id ELSE user_id END AS friend
                FROM friendships
                WHERE (user_id = ? OR friend_id = ?) AND status = 'accepted'
                ORDER BY id
                """,
                (user_id, user_id, user_id),
            ).fetchall()
        return [row["friend"] for row in rows if row["friend"] != user_id]
