"""Process-wide presence and messaging coordinator.

One :class:`Coordinator` is built at startup and handed to the transport.
It owns the session registry and focus map and exposes the four entry
points the transport and the REST layer call into.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Dict, List, Protocol, Union

from . import events
from .background import BackgroundRunner
from .chats import InMemoryChatStore
from .dispatcher import MessageDispatcher
from .events import Identity, MalformedEvent, UnknownEventKind, _now_ms, iso_timestamp, parse_frame, server_event
from .focus import FocusTracker
from .hub import FanoutBroadcaster
from .presence import PresenceTracker
from .sessions import Channel, Connection, SessionRegistry
from .social import InMemorySocialGraph
from .status import InMemoryStatusStore, UserStatus

logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    def authenticate(self, token: str | None) -> Union[Identity, Awaitable[Identity]]: ...


class SocialGraph(Protocol):
    def friends_of(self, user_id: Identity) -> List[Identity]: ...


class ChatStore(Protocol):
    def persist_message(
        self,
        sender_id: Identity,
        receiver_id: Identity,
        message: str,
        message_type: str = "text",
        *,
        is_read: bool = False,
        client_message_id: str | None = None,
    ) -> int: ...

    def mark_read(self, message_ref: Union[int, str], receiver_id: Identity) -> bool: ...


    def mark_all_read(self, receiver_id: Identity, sender_id: Identity) -> int: ...

    def unread_count(self, receiver_id: Identity, sender_id: Identity) -> int: ...

    def unread_counts(self, receiver_id: Identity) -> Dict[Identity, int]: ...


class StatusStore(Protocol):
    def set_presence(self, user_id: Identity, status: str, last_seen: str) -> None: ...

    def get_presence(self, user_id: Identity) -> UserStatus | None: ...


class Coordinator:
    def __init__(
        self,
        *,
        authenticator: Authenticator,
        chat_store: ChatStore | None = None,
        social_graph: SocialGraph | None = None,
        status_store: StatusStore | None = None,
        runner: BackgroundRunner | None = None,
        now_func=_now_ms,
    ) -> None:
        self.authenticator = authenticator
        self.chat_store = chat_store if chat_store is not None else InMemoryChatStore(now_func=now_func)
        self.social_graph = social_graph if social_graph is not None else InMemorySocialGraph()
        self.status_store = status_store if status_store is not None else InMemoryStatusStore()
        self.runner = runner or BackgroundRunner()
        self._now = now_func
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

        self.registry = SessionRegistry(now_func=now_func)
        self.focus = FocusTracker(self.registry)
        self.broadcaster = FanoutBroadcaster(self.registry)
        self.presence = PresenceTracker(
            broadcaster=self.broadcaster,
            status_store=self.status_store,
            social_graph=self.social_graph,
            runner=self.runner,
            now_func=now_func,
        )
        self.dispatcher = MessageDispatcher(
            registry=self.registry,
            focus=self.focus,
            broadcaster=self.broadcaster,
            chat_store=self.chat_store,
            runner=self.runner,
            now_func=now_func,
        )

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop is None:
            self._loop = loop

    async def on_connection_established(self, channel: Channel, token: str | None) -> Connection:
        """Authenticate ``token`` and register ``channel`` for the resolved identity.

        Raises :class:`finchat.auth.AuthError` when the credential is missing
        or rejected; the caller closes the channel with ``AUTH_CLOSE_CODE``.
        """

        if self._closed:
            raise RuntimeError("coordinator is shut down")
        self.bind_loop(asyncio.get_running_loop())
        result = self.authenticator.authenticate(token)
        if inspect.isawaitable(result):
            result = await result
        identity = result

        connection, came_online = self.registry.open(identity, channel)
        logger.info("user %s connected (connection %s)", identity, connection.conn_id)
        self.broadcaster.deliver_to(
            connection,
            server_event(
                events.CONNECTION_ESTABLISHED,
                {"userId": identity, "timestamp": iso_timestamp(self._now())},
            ),
        )
        if came_online:
            self.presence.went_online(identity)
        return connection

    def on_inbound_frame(self, connection: Connection, raw: str | bytes) -> None:
        try:
            kind, data = parse_frame(raw)
        except MalformedEvent as exc:
            logger.warning("dropping malformed frame from %s: %s", connection.identity, exc)
            return
        self.on_inbound_event(connection, kind, data)

    def on_inbound_event(self, connection: Connection, kind: str, data: Dict[str, Any]) -> None:
        """Dispatch one client event; never raises."""

        if not connection.authenticated or self.registry.get(connection.conn_id) is not connection:
            logger.warning("dropping %s on unauthenticated connection %s", kind, connection.conn_id)
            return
        try:
            self.dispatcher.dispatch(connection, kind, data)
        except UnknownEventKind as exc:
            logger.warning("dropping event from %s: %s", connection.identity, exc)
        except MalformedEvent as exc:
            logger.warning("dropping malformed %s from %s: %s", kind, connection.identity, exc)
        except Exception:
            logger.exception("handler for %s failed on connection %s", kind, connection.conn_id)

    def on_connection_closed(self, connection: Connection) -> None:
        """Deregister ``connection``; safe to call from several close paths."""

        self.focus.forget(connection.conn_id)
        went_offline = self.registry.deregister(connection.conn_id)
        if went_offline is None:
            return
        logger.info("user %s disconnected (no more sessions)", went_offline)
        if self._closed:
            return
        self.presence.went_offline(went_offline)

    def push_server_event(self, identity: Identity, kind: str, data: Dict[str, Any]) -> int:
        """Deliver a server-originated event to every session of ``identity``."""

        return self.broadcaster.deliver(identity, server_event(kind, data))

    def push_server_event_threadsafe(self, identity: Identity, kind: str, data: Dict[str, Any]) -> None:
        """Schedule :meth:`push_server_event` on the coordinator's loop from another thread."""

        if self._loop is None:
            raise RuntimeError("coordinator is not bound to an event loop")
        self._loop.call_soon_threadsafe(self.push_server_event, identity, kind, data)

    def is_online(self, identity: Identity) -> bool:
        return self.registry.is_online(identity)

    def online_identities(self) -> List[Identity]:
        return self.registry.online_identities()

    async def drain(self) -> None:
        await self.runner.drain()

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.runner.close()
