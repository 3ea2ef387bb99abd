from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .background import BackgroundRunner
from .events import FRIEND_STATUS_CHANGE, Identity, _now_ms, iso_timestamp, server_event
from .hub import FanoutBroadcaster
from .status import OFFLINE, ONLINE

if TYPE_CHECKING:
    from .coordinator import SocialGraph, StatusStore

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Turns session-occupancy transitions into persisted status and friend notices.

    The status write and the friend fan-out are independent background tasks:
    a failing write is logged and does not hold back the notices.
    """

    def __init__(
        self,
        *,
        broadcaster: FanoutBroadcaster,
        status_store: "StatusStore",
        social_graph: "SocialGraph",
        runner: BackgroundRunner,
        now_func=_now_ms,
    ) -> None:
        self._broadcaster = broadcaster
        self._status_store = status_store
        self._social_graph = social_graph
        self._runner = runner
        self._now = now_func

    def went_online(self, identity: Identity) -> None:
        self._transition(identity, ONLINE)

    def went_offline(self, identity: Identity) -> None:
        self._transition(identity, OFFLINE)

    def _transition(self, identity: Identity, status: str) -> None:
        last_seen = iso_timestamp(self._now())
        logger.info("user %s is now %s", identity, status)
        self._runner.submit(
            f"presence.persist:{identity}:{status}",
            self._status_store.set_presence,
            identity,
            status,
            last_seen,
        )
        self._runner.spawn(
            self._notify_friends(identity, status, last_seen),
            description=f"presence.fanout:{identity}:{status}",
        )

    async def _notify_friends(self, identity: Identity, status: str, last_seen: str) -> None:
        try:
            friends = await self._runner.call(self._social_graph.friends_of, identity)
        except Exception:
            logger.exception("could not load friends of %s for status notice", identity)
            return

        event = server_event(
            FRIEND_STATUS_CHANGE,
            {
                "userId": identity,
                "status": status,
                "lastSeen": last_seen,
                "timestamp": iso_timestamp(self._now()),
            },
        )
        delivered = 0
        for friend in friends:
            delivered += self._broadcaster.deliver(friend, event)
        logger.debug(
            "notified %d friends of %s (%d sessions) about %s", len(friends), identity, delivered, status
        )
