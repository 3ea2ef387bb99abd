from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Set

from .events import Identity, _now_ms

logger = logging.getLogger(__name__)


class Channel(Protocol):
    """Write side of one live transport connection."""

    @property
    def closed(self) -> bool: ...

    def send(self, payload: Dict[str, Any]) -> bool:
        """Queue ``payload`` for delivery; return ``False`` if not writable."""
        ...


@dataclass(eq=False)
class Connection:
    conn_id: int
    identity: Identity
    channel: Channel
    created_at_ms: int
    authenticated: bool = True


class SessionRegistry:
    """Maps identities to their live connections.

    Connections are filed by an opaque integer handle. An identity that is
    present always owns at least one handle; removing the last handle drops
    the identity in the same critical section.
    """

    def __init__(self, *, now_func=_now_ms) -> None:
        self._now = now_func
        self._lock = threading.RLock()
        self._handles = itertools.count(1)
        self._connections: Dict[int, Connection] = {}
        self._sessions: Dict[Identity, Set[int]] = {}

    def open(self, identity: Identity, channel: Channel) -> tuple[Connection, bool]:
        """Allocate a handle for ``channel`` and register it.

        Returns the new connection and whether ``identity`` just came online.
        """

        with self._lock:
            connection = Connection(
                conn_id=next(self._handles),
                identity=identity,
                channel=channel,
                created_at_ms=self._now(),
            )
            came_online = self.register(connection)
        return connection, came_online

    def register(self, connection: Connection) -> bool:
        with self._lock:
            if connection.conn_id in self._connections:
                return False
            handles = self._sessions.get(connection.identity)
            came_online = not handles
            if handles is None:
                handles = self._sessions[connection.identity] = set()
            handles.add(connection.conn_id)
            self._connections[connection.conn_id] = connection
        logger.debug(
            "registered connection %s for %s (online=%s)", connection.conn_id, connection.identity, came_online
        )
        return came_online

    def deregister(self, conn_id: int) -> Identity | None:
        """Remove a connection; return its identity iff that left it offline."""

        with self._lock:
            connection = self._connections.pop(conn_id, None)
            if connection is None:
                return None
            handles = self._sessions.get(connection.identity)
            if handles is None:
                return None
            handles.discard(conn_id)
            if handles:
                return None
            del self._sessions[connection.identity]
        logger.debug("identity %s has no remaining connections", connection.identity)
        return connection.identity

    def get(self, conn_id: int) -> Connection | None:
        with self._lock:
            return self._connections.get(conn_id)

    def sessions_of(self, identity: Identity) -> List[Connection]:
        with self._lock:
            handles = self._sessions.get(identity, ())
            return [self._connections[handle] for handle in handles]

    def is_online(self, identity: Identity) -> bool:
        with self._lock:
            return bool(self._sessions.get(identity))

    def online_identities(self) -> List[Identity]:
        with self._lock:
            return list(self._sessions)

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
