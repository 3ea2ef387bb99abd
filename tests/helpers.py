from __future__ import annotations

from typing import Any, Dict, List

from finchat.auth import JWTAuthenticator
from finchat.chats import InMemoryChatStore
from finchat.coordinator import Coordinator
from finchat.social import InMemorySocialGraph
from finchat.status import InMemoryStatusStore

SECRET = "test-secret-that-is-long-enough-for-hs256"


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class FakeChannel:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    def send(self, payload: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.sent.append(payload)
        return True

    def kinds(self) -> List[str]:
        return [payload["kind"] for payload in self.sent]

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [payload["data"] for payload in self.sent if payload["kind"] == kind]


class FailingStore:
    """Raises on every call; stands in for an unavailable database."""

    def __getattr__(self, name: str):
        def _fail(*args, **kwargs):
            raise RuntimeError(f"{name} unavailable")

        return _fail


def build_coordinator(*, clock: FakeClock | None = None, **overrides) -> Coordinator:
    clock = clock or FakeClock()
    kwargs = {
        "authenticator": JWTAuthenticator(SECRET),
        "chat_store": InMemoryChatStore(now_func=clock.now),
        "social_graph": InMemorySocialGraph(),
        "status_store": InMemoryStatusStore(),
        "now_func": clock.now,
    }
    kwargs.update(overrides)
    return Coordinator(**kwargs)


def token_for(identity, *, ttl_seconds: int = 3600) -> str:
    return JWTAuthenticator(SECRET).issue(identity, ttl_seconds=ttl_seconds)
