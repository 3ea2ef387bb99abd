from __future__ import annotations

import logging
from typing import Any, Dict

from .events import Identity
from .sessions import Connection, SessionRegistry

logger = logging.getLogger(__name__)


class FanoutBroadcaster:
    """Delivers one payload to every live session of an identity.

    Delivery is best effort: channels that are no longer writable are skipped
    and left for their own disconnect path to deregister.
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    def deliver(self, identity: Identity, payload: Dict[str, Any]) -> int:
        sent = 0
        for connection in self._registry.sessions_of(identity):
            if self.deliver_to(connection, payload):
                sent += 1
        if sent:
            logger.debug("sent %s to %s (%d sessions)", payload.get("kind"), identity, sent)
        return sent

    def deliver_to(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        channel = connection.channel
        if channel.closed:
            logger.debug("skipping closed connection %s", connection.conn_id)
            return False
        return channel.send(payload)
