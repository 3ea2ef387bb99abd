"""Wire-level event helpers shared by the dispatcher and the transport."""

from __future__ import annotations

import itertools
import json
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Tuple, Union

Identity = Union[int, str]

CONNECTION_ESTABLISHED = "connection_established"
FRIEND_STATUS_CHANGE = "friend_status_change"
CHAT_MESSAGE = "chat_message"
NEW_MESSAGE = "new_message"
MESSAGE_SENT = "message_sent"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"
READ_RECEIPT = "read_receipt"
UNREAD_COUNT_UPDATE = "unread_count_update"
CHAT_OPEN = "chat_open"
CHAT_OPENED = "chat_opened"
CHAT_CLOSE = "chat_close"
GET_UNREAD_COUNT = "get_unread_count"
UNREAD_COUNT_RESPONSE = "unread_count_response"
PING = "ping"
PONG = "pong"

READ = "read"
UNREAD = "unread"

MESSAGE_TYPES = frozenset({"text", "image", "file"})

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class MalformedEvent(ValueError):
    """Raised when an inbound frame cannot be parsed or lacks a required field."""


class UnknownEventKind(ValueError):
    """Raised for event kinds the dispatcher has no handler for."""

    def __init__(self, kind: Any) -> None:
        super().__init__(f"unknown event kind: {kind!r}")
        self.kind = kind


def _now_ms() -> int:
    return int(time.time() * 1000)


def iso_timestamp(ts_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with a ``Z`` suffix."""

    moment = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def server_event(kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"kind": kind, "data": data}


def parse_frame(raw: str | bytes) -> Tuple[str, Dict[str, Any]]:
    """Decode a ``{"kind": ..., "data": {...}}`` text frame.

    Older clients name the discriminator ``type``; it is accepted when
    ``kind`` is absent. A missing ``data`` object is treated as empty.
    """

    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent("frame is not valid json") from exc
    if not isinstance(frame, dict):
        raise MalformedEvent("frame must be a json object")

    kind = frame.get("kind", frame.get("type"))
    if not isinstance(kind, str) or not kind:
        raise MalformedEvent("frame kind must be a non-empty string")

    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedEvent("frame data must be an object")
    return kind, data


def coerce_identity(value: Any) -> Identity:
    """Normalize an identity taken off the wire.

    Integers pass through and numeric strings become integers so that
    ``"7"`` and ``7`` address the same person. Any other non-empty string is
    kept as-is.
    """

    if isinstance(value, bool) or value is None:
        raise MalformedEvent("identity must be an int or string")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise MalformedEvent("identity must not be empty")
        if stripped.isdigit():
            return int(stripped)
        return stripped
    raise MalformedEvent("identity must be an int or string")


def coerce_message_ref(value: Any) -> Union[int, str]:
    """Normalize a message reference: a stored row id or a send correlation id.

    Numeric strings become integers so both stores match ``"1"`` and ``1``
    to the same row.
    """

    if isinstance(value, bool) or value is None:
        raise MalformedEvent("messageId must be an int or string")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise MalformedEvent("messageId must not be empty")
        if stripped.isdigit():
            return int(stripped)
        return stripped
    raise MalformedEvent("messageId must be an int or string")


def require_identity(data: Dict[str, Any], field: str) -> Identity:
    if field not in data:
        raise MalformedEvent(f"{field} required")
    return coerce_identity(data[field])


def require_field(data: Dict[str, Any], field: str) -> Any:
    value = data.get(field)
    if value is None:
        raise MalformedEvent(f"{field} required")
    return value


def preview(body: Any, max_length: int = 20) -> str:
    """Return a log-safe excerpt of a chat body."""

    if not body:
        return "[empty message]"
    text = str(body)
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


class MessageIdFactory:
    """Generates correlation ids for a single send/ack pair.

    Ids combine the send time, a per-process counter and a random suffix. The
    counter makes them unique within one process; they are not durable keys.
    """

    def __init__(self, *, now_func=_now_ms) -> None:
        self._now = now_func
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            seq = next(self._counter)
        suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
        return f"{self._now()}_{_base36(seq)}_{suffix}"
