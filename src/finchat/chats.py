from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List

from .events import Identity, _now_ms, iso_timestamp


@dataclass
class ChatMessage:
    id: int
    sender_id: Identity
    receiver_id: Identity
    message: str
    message_type: str
    is_read: bool
    read_at: str | None
    created_at: str
    client_message_id: str | None = None


class InMemoryChatStore:
    """Chat persistence kept in process memory; used by tests and `serve` without --db."""

    def __init__(self, *, now_func=_now_ms) -> None:
        self._now = now_func
        self._lock = threading.Lock()
        self._messages: List[ChatMessage] = []
        self._next_id = 1

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
        with self._lock:
            message_id = self._next_id
            self._next_id += 1
            self._messages.append(
                ChatMessage(
                    id=message_id,
                    sender_id=sender_id,
                    receiver_id=receiver_id,
                    message=message,
                    message_type=message_type,
                    is_read=is_read,
                    read_at=now if is_read else None,
                    created_at=now,
                    client_message_id=client_message_id,
                )
            )
        return message_id

    def get(self, message_id: int) -> ChatMessage | None:
        with self._lock:
            for stored in self._messages:
                if stored.id == message_id:
                    return stored
        return None

    def mark_read(self, message_ref: int | str, receiver_id: Identity) -> bool:
        """Mark one message read, addressed by row id or send correlation id."""

        now = iso_timestamp(self._now())
        # Compared as text, like the INTEGER column in the SQLite store.
        ref = str(message_ref)
        with self._lock:
            for stored in self._messages:
                if ref in (str(stored.id), stored.client_message_id) and stored.receiver_id == receiver_id:
                    if not stored.is_read:
                        stored.is_read = True
                        stored.read_at = now
                    return True
        return False

    def mark_all_read(self, receiver_id: Identity, sender_id: Identity) -> int:
        now = iso_timestamp(self._now())
        changed = 0
        with self._lock:
            for stored in self._messages:
                if stored.receiver_id == receiver_id and stored.sender_id == sender_id and not stored.is_read:
                    stored.is_read = True
                    stored.read_at = now
                    changed += 1
        return changed

    def unread_count(self, receiver_id: Identity, sender_id: Identity) -> int:
        with self._lock:
            return sum(
                1
                for stored in self._messages
                if stored.receiver_id == receiver_id and stored.sender_id == sender_id and not stored.is_read
            )

    def unread_counts(self, receiver_id: Identity) -> Dict[Identity, int]:
        counts: Dict[Identity, int] = {}
        with self._lock:
            for stored in self._messages:
                if stored.receiver_id == receiver_id and not stored.is_read:
                    counts[stored.sender_id] = counts.get(stored.sender_id, 0) + 1
        return counts
