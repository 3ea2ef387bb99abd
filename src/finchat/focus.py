from __future__ import annotations

import threading
from typing import Dict

from .events import Identity
from .sessions import SessionRegistry


class FocusTracker:
    """Records which counterpart conversation each connection is viewing."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self._lock = threading.RLock()
        self._focus: Dict[int, Identity] = {}

    def open(self, conn_id: int, counterpart: Identity) -> Identity | None:
        """Focus ``conn_id`` on ``counterpart``; returns the replaced focus."""

        with self._lock:
            previous = self._focus.get(conn_id)
            self._focus[conn_id] = counterpart
            return previous

    def close(self, conn_id: int, counterpart: Identity) -> bool:
        # A later open may already have moved the focus elsewhere.
        with self._lock:
            if self._focus.get(conn_id) != counterpart:
                return False
            del self._focus[conn_id]
            return True

    def focus_of(self, conn_id: int) -> Identity | None:
        with self._lock:
            return self._focus.get(conn_id)

    def forget(self, conn_id: int) -> None:
        with self._lock:
            self._focus.pop(conn_id, None)

    def is_focused(self, identity: Identity, on_counterpart: Identity) -> bool:
        connections = self._registry.sessions_of(identity)
        with self._lock:
            return any(self._focus.get(connection.conn_id) == on_counterpart for connection in connections)
