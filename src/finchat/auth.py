"""Bearer-token verification for incoming websocket connections."""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable, Mapping

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from .events import Identity, MalformedEvent, coerce_identity

logger = logging.getLogger(__name__)

# Close code sent when the handshake credential is missing or rejected.
AUTH_CLOSE_CODE = 1008


class AuthError(Exception):
    """The connection credential is missing, invalid or expired."""

    def __init__(self, message: str, *, reason: str = "Invalid token") -> None:
        super().__init__(message)
        self.reason = reason


class JWTAuthenticator:
    """Resolves HMAC-signed JWTs to identities.

    The identity is read from ``identity_claim`` (``id`` by default, the claim
    the account service signs into its login tokens).
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithms: Iterable[str] = ("HS256",),
        identity_claim: str = "id",
        leeway: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("jwt secret must not be empty")
        self._secret = secret
        self._algorithms = list(algorithms)
        self._identity_claim = identity_claim
        self._leeway = leeway

    def authenticate(self, token: str | None) -> Identity:
        if not token:
            raise AuthError("no token provided", reason="Authentication required")
        try:
            claims = jwt.decode(token, self._secret, algorithms=self._algorithms, leeway=self._leeway)
        except ExpiredSignatureError as exc:
            raise AuthError("token expired") from exc
        except InvalidTokenError as exc:
            raise AuthError(f"invalid token: {exc}") from exc
        if self._identity_claim not in claims:
            raise AuthError(f"token has no {self._identity_claim!r} claim")
        try:
            return coerce_identity(claims[self._identity_claim])
        except MalformedEvent as exc:
            raise AuthError(f"token {self._identity_claim!r} claim is not an identity") from exc

    def issue(self, identity: Identity, *, ttl_seconds: int = 7 * 24 * 3600, extra: Mapping[str, Any] | None = None) -> str:
        """Mint a token for ``identity``; used by the CLI and tests."""

        now = int(time.time())
        claims: dict[str, Any] = dict(extra or {})
        claims.update({self._identity_claim: identity, "iat": now, "exp": now + ttl_seconds})
        return jwt.encode(claims, self._secret, algorithm=self._algorithms[0])
