"""Command line entry point for the finchat gateway."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TextIO

from aiohttp import web

from .auth import JWTAuthenticator
from .config import GatewayConfig
from .events import MalformedEvent, coerce_identity
from .ws_transport import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # aiohttp logs every request at INFO.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def _run_serve(config: GatewayConfig) -> int:
    if not config.jwt_secret:
        print("FINCHAT_JWT_SECRET must be set to serve", file=sys.stderr)
        return 2
    configure_logging(config.log_level)
    logging.getLogger(__name__).info(
        "starting gateway on %s:%s (db=%s)", config.host, config.port, config.db_path or "memory"
    )
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def _run_token(config: GatewayConfig, args: argparse.Namespace, output: TextIO) -> int:
    if not config.jwt_secret:
        print("FINCHAT_JWT_SECRET must be set to mint tokens", file=sys.stderr)
        return 2
    try:
        identity = coerce_identity(args.user_id)
    except MalformedEvent as exc:
        print(f"invalid user id: {exc}", file=sys.stderr)
        return 2
    authenticator = JWTAuthenticator(
        config.jwt_secret,
        algorithms=(config.jwt_algorithm,),
        identity_claim=config.identity_claim,
    )
    output.write(authenticator.issue(identity, ttl_seconds=args.ttl) + "\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="finchat", description="Real-time presence and chat gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--db", dest="db_path", default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument(
        "--idle-timeout",
        dest="idle_timeout_s",
        type=float,
        default=None,
        help="Seconds without client frames before a websocket is closed",
    )
    serve_parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, ...)")

    token_parser = subparsers.add_parser("token", help="Mint a development bearer token")
    token_parser.add_argument("user_id", help="Identity to embed in the token")
    token_parser.add_argument("--ttl", type=int, default=24 * 3600, help="Token lifetime in seconds")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    config = GatewayConfig.from_env()

    if args.command == "serve":
        config = config.with_overrides(
            host=args.host,
            port=args.port,
            db_path=args.db_path,
            idle_timeout_s=args.idle_timeout_s,
            log_level=args.log_level,
        )
        return _run_serve(config)
    return _run_token(config, args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
