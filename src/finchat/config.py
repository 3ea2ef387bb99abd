from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

ENV_PREFIX = "FINCHAT_"


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 5005
    db_path: str | None = None
    jwt_secret: str = field(default="", repr=False)
    jwt_algorithm: str = "HS256"
    identity_claim: str = "id"
    idle_timeout_s: float = 90.0
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000
    push_token: str | None = field(default=None, repr=False)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewayConfig":
        """Build a config from ``FINCHAT_*`` variables, e.g. ``FINCHAT_JWT_SECRET``."""

        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for spec in fields(cls):
            raw = environ.get(ENV_PREFIX + spec.name.upper())
            if raw is None or raw == "":
                continue
            values[spec.name] = _coerce(spec.name, spec.type, raw)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "GatewayConfig":
        """Return a copy with every non-``None`` override applied."""

        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _coerce(name: str, annotation: Any, raw: str) -> Any:
    kind = str(annotation)
    try:
        if kind.startswith("int"):
            return int(raw)
        if kind.startswith("float"):
            return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name.upper()} must be numeric, got {raw!r}") from exc
    return raw
