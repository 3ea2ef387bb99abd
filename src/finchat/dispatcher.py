from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict

from . import events
from .background import BackgroundRunner
from .events import (
    Identity,
    MalformedEvent,
    MessageIdFactory,
    UnknownEventKind,
    _now_ms,
    coerce_message_ref,
    iso_timestamp,
    preview,
    require_field,
    require_identity,
    server_event,
)
from .focus import FocusTracker
from .hub import FanoutBroadcaster
from .sessions import Connection, SessionRegistry

if TYPE_CHECKING:
    from .coordinator import ChatStore

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Dict[str, Any]], None]


@dataclass(frozen=True)
class ChatEnvelope:
    """A chat message in flight between validation and delivery."""

    sender_id: Identity
    receiver_id: Identity
    body: str
    message_type: str
    message_id: str
    read_status: str
    receiver_online: bool
    receiver_in_chat: bool
    timestamp: str


class MessageDispatcher:
    """Routes inbound client events to their handlers.

    Handlers never wait on persistence: store calls are handed to the
    background runner and only the in-memory delivery happens inline.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        focus: FocusTracker,
        broadcaster: FanoutBroadcaster,
        chat_store: "ChatStore",
        runner: BackgroundRunner,
        now_func=_now_ms,
        message_ids: MessageIdFactory | None = None,
    ) -> None:
        self._registry = registry
        self._focus = focus
        self._broadcaster = broadcaster
        self._chat_store = chat_store
        self._runner = runner
        self._now = now_func
        self._message_ids = message_ids or MessageIdFactory(now_func=now_func)
        self._handlers: Dict[str, Handler] = {
            events.CHAT_MESSAGE: self._handle_chat_message,
            events.TYPING_START: self._handle_typing_start,
            events.TYPING_STOP: self._handle_typing_stop,
            events.READ_RECEIPT: self._handle_read_receipt,
            events.CHAT_OPEN: self._handle_chat_open,
            events.CHAT_CLOSE: self._handle_chat_close,
            events.GET_UNREAD_COUNT: self._handle_get_unread_count,
            events.PING: self._handle_ping,
        }

    @property
    def kinds(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def dispatch(self, connection: Connection, kind: str, data: Dict[str, Any]) -> None:
        """Run the handler for ``kind``.

        Raises :class:`UnknownEventKind` or :class:`MalformedEvent`; the
        coordinator turns both into a logged drop.
        """

        handler = self._handlers.get(kind)
        if handler is None:
            raise UnknownEventKind(kind)
        logger.debug("received %s from %s", kind, connection.identity)
        handler(connection, data)

    def _timestamp(self) -> str:
        return iso_timestamp(self._now())

    def _handle_chat_message(self, connection: Connection, data: Dict[str, Any]) -> None:
        envelope = self._build_envelope(connection.identity, data)
        logger.info(
            "chat message %s from %s to %s: [%s] [%d chars] %r",
            envelope.message_id,
            envelope.sender_id,
            envelope.receiver_id,
            envelope.message_type,
            len(envelope.body),
            preview(envelope.body),
        )

        self._broadcaster.deliver(
            envelope.receiver_id,
            server_event(
                events.NEW_MESSAGE,
                {
                    "messageId": envelope.message_id,
                    "senderId": envelope.sender_id,
                    "message": envelope.body,
                    "messageType": envelope.message_type,
                    "timestamp": envelope.timestamp,
                    "readStatus": envelope.read_status,
                    "isOnline": envelope.receiver_online,
                    "isInChat": envelope.receiver_in_chat,
                },
            ),
        )
        self._broadcaster.deliver(
            envelope.sender_id,
            server_event(
                events.MESSAGE_SENT,
                {
                    "messageId": envelope.message_id,
                    "receiverId": envelope.receiver_id,
                    "message": envelope.body,
                    "messageType": envelope.message_type,
                    "timestamp": envelope.timestamp,
                    "readStatus": envelope.read_status,
                    "receiverOnline": envelope.receiver_online,
                    "receiverInChat": envelope.receiver_in_chat,
                },
            ),
        )
        self._runner.submit(
            f"chat.persist:{envelope.message_id}",
            self._chat_store.persist_message,
            envelope.sender_id,
            envelope.receiver_id,
            envelope.body,
            envelope.message_type,
            is_read=envelope.read_status == events.READ,
            client_message_id=envelope.message_id,
        )

    def _build_envelope(self, sender_id: Identity, data: Dict[str, Any]) -> ChatEnvelope:
        receiver_id = require_identity(data, "receiverId")
        body = require_field(data, "message")
        if not isinstance(body, str) or not body.strip():
            raise MalformedEvent("message must be a non-empty string")
        message_type = data.get("messageType") or "text"
        if message_type not in events.MESSAGE_TYPES:
            raise MalformedEvent(f"unsupported messageType: {message_type!r}")

        receiver_online = self._registry.is_online(receiver_id)
        receiver_in_chat = self._focus.is_focused(receiver_id, sender_id)
        read_status = events.READ if receiver_online and receiver_in_chat else events.UNREAD
        return ChatEnvelope(
            sender_id=sender_id,
            receiver_id=receiver_id,
            body=body,
            message_type=message_type,
            message_id=self._message_ids.next_id(),
            read_status=read_status,
            receiver_online=receiver_online,
            receiver_in_chat=receiver_in_chat,
            timestamp=self._timestamp(),
        )

    def _handle_typing_start(self, connection: Connection, data: Dict[str, Any]) -> None:
        self._relay_typing(events.TYPING_START, connection, data)

    def _handle_typing_stop(self, connection: Connection, data: Dict[str, Any]) -> None:
        self._relay_typing(events.TYPING_STOP, connection, data)

    def _relay_typing(self, kind: str, connection: Connection, data: Dict[str, Any]) -> None:
        receiver_id = require_identity(data, "receiverId")
        self._broadcaster.deliver(
            receiver_id,
            server_event(kind, {"senderId": connection.identity, "timestamp": self._timestamp()}),
        )

    def _handle_read_receipt(self, connection: Connection, data: Dict[str, Any]) -> None:
        message_id = coerce_message_ref(require_field(data, "messageId"))
        sender_id = require_identity(data, "senderId")
        reader_id = connection.identity
        logger.debug("read receipt from %s for message %s", reader_id, message_id)

        self._broadcaster.deliver(
            sender_id,
            server_event(
                events.READ_RECEIPT,
                {
                    "messageId": message_id,
                    "readBy": reader_id,
                    "timestamp": self._timestamp(),
                    "readStatus": events.READ,
                },
            ),
        )
        self._runner.spawn(
            self._record_read(message_id, reader_id, sender_id),
            description=f"chat.read:{message_id}",
        )

    async def _record_read(self, message_id: Any, reader_id: Identity, sender_id: Identity) -> None:
        try:
            await self._runner.call(self._chat_store.mark_read, message_id, reader_id)
        except Exception:
            logger.exception("could not mark message %s read for %s", message_id, reader_id)
        unread = await self._runner.call(self._chat_store.unread_count, reader_id, sender_id)
        self._broadcaster.deliver(
            reader_id,
            server_event(
                events.UNREAD_COUNT_UPDATE,
                {"senderId": sender_id, "unreadCount": int(unread or 0), "timestamp": self._timestamp()},
            ),
        )

    def _handle_chat_open(self, connection: Connection, data: Dict[str, Any]) -> None:
        counterpart = require_identity(data, "chatWithUserId")
        self._focus.open(connection.conn_id, counterpart)
        logger.debug("user %s opened chat with %s", connection.identity, counterpart)
        self._runner.submit(
            f"chat.read_all:{connection.identity}:{counterpart}",
            self._chat_store.mark_all_read,
            connection.identity,
            counterpart,
        )
        self._broadcaster.deliver(
            counterpart,
            server_event(events.CHAT_OPENED, {"userId": connection.identity, "timestamp": self._timestamp()}),
        )

    def _handle_chat_close(self, connection: Connection, data: Dict[str, Any]) -> None:
        counterpart = require_identity(data, "chatWithUserId")
        if self._focus.close(connection.conn_id, counterpart):
            logger.debug("user %s closed chat with %s", connection.identity, counterpart)

    def _handle_get_unread_count(self, connection: Connection, data: Dict[str, Any]) -> None:
        sender_id = require_identity(data, "senderId")
        self._runner.spawn(
            self._reply_unread_count(connection, sender_id),
            description=f"chat.unread:{connection.identity}:{sender_id}",
        )

    async def _reply_unread_count(self, connection: Connection, sender_id: Identity) -> None:
        unread = await self._runner.call(self._chat_store.unread_count, connection.identity, sender_id)
        self._broadcaster.deliver_to(
            connection,
            server_event(
                events.UNREAD_COUNT_RESPONSE,
                {"senderId": sender_id, "unreadCount": int(unread or 0), "timestamp": self._timestamp()},
            ),
        )

    def _handle_ping(self, connection: Connection, data: Dict[str, Any]) -> None:
        self._broadcaster.deliver_to(connection, server_event(events.PONG, {"timestamp": self._timestamp()}))
