from __future__ import annotations

from typing import Dict

from .chats import ChatMessage
from .events import Identity, _now_ms, iso_timestamp
from .sqlite_backend import SQLiteBackend


class SQLiteChatStore:
    """Durable chat persistence backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, *, now_func=_now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def persist_message(
        self,
        sender_id: Identity,
        receiver_id: Identity,
        message: str,
        message_type: str = "text",
        *,
        is_read: bool = False,
        client_message_id: str | None = None,
    ) -> int:
        now = iso_timestamp(self._now())
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                """
                INSERT INTO chats (
                    sender_id, receiver_id, message, message_type, is_read, read_at, created_at, client_message_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sender_id,
                    receiver_id,
                    message,
                    message_type,
                    int(is_read),
                    now if is_read else None,
                    now,
                    client_message_id,
                ),
            )
            return int(cursor.lastrowid)

    def get(self, message_id: int) -> ChatMessage | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                """
                SELECT id, sender_id, receiver_id, message, message_type, is_read, read_at, created_at, client_message_id
                FROM chats WHERE id = ?
                """,
                (message_id,),
            ).fetchone()
        if row is None:
            return None
        return ChatMessage(
            id=row["id"],
            sender_id=row["sender_id"],
            receiver_id=row["receiver_id"],
            message=row["message"],
            message_type=row["message_type"],
            is_read=bool(row["is_read"]),
            read_at=row["read_at"],
            created_at=row["created_at"],
            client_message_id=row["client_message_id"],
        )

    def mark_read(self, message_ref: int | str, receiver_id: Identity) -> bool:
        now = iso_timestamp(self._now())
        with self._backend.lock:
            conn = self._backend.connection
            row = conn.execute(
                """
                SELECT id, is_read FROM chats
                WHERE (id = ? OR client_message_id = ?) AND receiver_id = ?
                """,
                (message_ref, message_ref, receiver_id),
            ).fetchone()
            if row is None:
                return False
            if not row["is_read"]:
                conn.execute("UPDATE chats SET is_read = 1, read_at = ? WHERE id = ?", (now, row["id"]))
        return True

    def mark_all_read(self, receiver_id: Identity, sender_id: Identity) -> int:
        now = iso_timestamp(self._now())
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                """
                UPDATE chats SET is_read = 1, read_at = ?
                WHERE receiver_id = ? AND sender_id = ? AND is_read = 0
                """,
                (now, receiver_id, sender_id),
            )
            return cursor.rowcount

    def unread_count(self, receiver_id: Identity, sender_id: Identity) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT COUNT(*) FROM chats WHERE receiver_id = ? AND sender_id = ? AND is_read = 0",
                (receiver_id, sender_id),
            ).fetchone()
        return int(row[0]) if row else 0

    def unread_counts(self, receiver_id: Identity) -> Dict[Identity, int]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT sender_id, COUNT(*) AS unread FROM chats
                WHERE receiver_id = ? AND is_read = 0
                GROUP BY sender_id
                """,
                (receiver_id,),
            ).fetchall()
        return {row["sender_id"]: int(row["unread"]) for row in rows}
