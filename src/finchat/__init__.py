"""Real-time presence and messaging gateway."""

from .auth import AuthError, JWTAuthenticator
from .config import GatewayConfig
from .coordinator import Coordinator
from .events import MalformedEvent, UnknownEventKind
from .sessions import Connection, SessionRegistry
from .server import main
from .ws_transport import create_app

__all__ = [
    "AuthError",
    "Connection",
    "Coordinator",
    "GatewayConfig",
    "JWTAuthenticator",
    "MalformedEvent",
    "SessionRegistry",
    "UnknownEventKind",
    "create_app",
    "main",
]
