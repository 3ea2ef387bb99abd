from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import weakref
from typing import Any, Dict

from aiohttp import WSMsgType, web

from .auth import AUTH_CLOSE_CODE, AuthError, JWTAuthenticator
from .config import ENV_PREFIX, GatewayConfig
from .coordinator import Coordinator
from .events import Identity, MalformedEvent, coerce_identity
from .social import SQLiteSocialGraph
from .sqlite_backend import SQLiteBackend
from .sqlite_chats import SQLiteChatStore
from .status import SQLiteStatusStore

logger = logging.getLogger(__name__)

RUNTIME_KEY = web.AppKey("coordinator", Coordinator)
CONFIG_KEY = web.AppKey("config", GatewayConfig)
CHANNELS_KEY = web.AppKey("channels", weakref.WeakSet)

IDLE_CLOSE_CODE = 1001
BACKPRESSURE_CLOSE_CODE = 1011


class WebSocketChannel:
    """Outbound side of one websocket.

    Payloads go through a bounded FIFO drained by a single writer task, so
    events reach the client in the order they were queued.
    """

    def __init__(self, ws: web.WebSocketResponse, *, queue_size: int = 1000) -> None:
        self._ws = ws
        self._outbound: asyncio.Queue[Dict[str, Any] | None] = asyncio.Queue(maxsize=queue_size)
        self._closing = False
        self._writer_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closing or self._ws.closed

    def send(self, payload: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._outbound.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("outbound queue full; closing websocket")
            self._close_task = asyncio.ensure_future(
                self.close(code=BACKPRESSURE_CLOSE_CODE, message="backpressure")
            )
            return False
        return True

    def start(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer())

    async def _writer(self) -> None:
        try:
            while True:
                payload = await self._outbound.get()
                if payload is None:
                    break
                try:
                    await self._ws.send_json(payload)
                except (ConnectionResetError, RuntimeError) as exc:
                    logger.debug("dropping outbound %s: %s", payload.get("kind"), exc)
                    break
        except asyncio.CancelledError:
            return

    async def close(self, *, code: int, message: str) -> None:
        if self._closing:
            return
        self._closing = True
        await self._ws.close(code=code, message=message.encode("utf-8"))

    async def stop(self) -> None:
        self._closing = True
        if self._writer_task is not None:
            self._writer_task.cancel()
            await asyncio.gather(self._writer_task, return_exceptions=True)
        if self._close_task is not None:
            await asyncio.gather(self._close_task, return_exceptions=True)


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid or missing bearer token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _bearer_token(request: web.Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[len("Bearer ") :].strip() or None


async def _authenticate_request(request: web.Request) -> Identity | None:
    coordinator = request.app[RUNTIME_KEY]
    token = _bearer_token(request)
    if token is None:
        return None
    try:
        result = coordinator.authenticator.authenticate(token)
        if inspect.isawaitable(result):
            result = await result
    except AuthError as exc:
        logger.info("rejected http request: %s", exc)
        return None
    return result


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_online(request: web.Request) -> web.Response:
    coordinator = request.app[RUNTIME_KEY]
    if await _authenticate_request(request) is None:
        return _unauthorized()
    users = coordinator.online_identities()
    return web.json_response({"count": len(users), "users": users})


async def handle_user_status(request: web.Request) -> web.Response:
    coordinator = request.app[RUNTIME_KEY]
    if await _authenticate_request(request) is None:
        return _unauthorized()
    try:
        user_id = coerce_identity(request.match_info["user_id"])
    except MalformedEvent as exc:
        return _invalid_request(str(exc))

    online = coordinator.is_online(user_id)
    record = await coordinator.runner.call(coordinator.status_store.get_presence, user_id)
    if record is None and not online:
        return _not_found("user not found")
    return web.json_response(
        {
            "userId": user_id,
            "online": online,
            "status": record.status if record is not None else None,
            "lastSeen": record.last_seen if record is not None else None,
        }
    )


async def handle_unread(request: web.Request) -> web.Response:
    coordinator = request.app[RUNTIME_KEY]
    identity = await _authenticate_request(request)
    if identity is None:
        return _unauthorized()
    counts = await coordinator.runner.call(coordinator.chat_store.unread_counts, identity)
    return web.json_response(
        {
            "total": sum(counts.values()),
            "unread": [{"senderId": sender, "count": count} for sender, count in counts.items()],
        }
    )


async def handle_push(request: web.Request) -> web.Response:
    coordinator = request.app[RUNTIME_KEY]
    config = request.app[CONFIG_KEY]
    token = _bearer_token(request)
    if token is None or not secrets.compare_digest(token, config.push_token or ""):
        return _unauthorized()
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be an object")

    kind = body.get("kind")
    data = body.get("data") or {}
    if not isinstance(kind, str) or not kind or not isinstance(data, dict):
        return _invalid_request("userId, kind and data required")
    try:
        user_id = coerce_identity(body.get("userId"))
    except MalformedEvent as exc:
        return _invalid_request(str(exc))

    delivered = coordinator.push_server_event(user_id, kind, data)
    return web.json_response({"delivered": delivered})


def _handshake_token(request: web.Request) -> str | None:
    return request.query.get("token") or _bearer_token(request)


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    coordinator = request.app[RUNTIME_KEY]
    config = request.app[CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    channel = WebSocketChannel(ws, queue_size=config.outbound_queue_size)
    try:
        connection = await coordinator.on_connection_established(channel, _handshake_token(request))
    except AuthError as exc:
        logger.info("websocket authentication failed: %s", exc)
        await ws.close(code=AUTH_CLOSE_CODE, message=exc.reason.encode("utf-8"))
        return ws

    request.app[CHANNELS_KEY].add(channel)
    channel.start()

    loop = asyncio.get_running_loop()
    last_activity = loop.time()

    def mark_activity() -> None:
        nonlocal last_activity
        last_activity = loop.time()

    async def idle_watchdog() -> None:
        try:
            while True:
                remaining = last_activity + config.idle_timeout_s - loop.time()
                if remaining <= 0:
                    logger.info("closing idle connection %s", connection.conn_id)
                    await channel.close(code=IDLE_CLOSE_CODE, message="idle timeout")
                    return
                await asyncio.sleep(remaining)
        except asyncio.CancelledError:
            return

    watchdog_task = asyncio.create_task(idle_watchdog())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                coordinator.on_inbound_frame(connection, msg.data)
            elif msg.type == WSMsgType.BINARY:
                mark_activity()
                logger.warning("dropping binary frame from %s", connection.identity)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("websocket error for %s: %s", connection.identity, ws.exception())
                break
    finally:
        watchdog_task.cancel()
        coordinator.on_connection_closed(connection)
        await channel.stop()
        await asyncio.gather(watchdog_task, return_exceptions=True)
        logger.debug("websocket closed for %s (connection %s)", connection.identity, connection.conn_id)

    return ws


def _build_coordinator(config: GatewayConfig, app: web.Application) -> Coordinator:
    if not config.jwt_secret:
        raise ValueError(f"{ENV_PREFIX}JWT_SECRET must be set to build the gateway")
    authenticator = JWTAuthenticator(
        config.jwt_secret,
        algorithms=(config.jwt_algorithm,),
        identity_claim=config.identity_claim,
    )
    if config.db_path is None:
        return Coordinator(authenticator=authenticator)

    backend = SQLiteBackend(config.db_path)

    async def close_db(_: web.Application) -> None:
        backend.close()

    # Registered after the coordinator's own cleanup so pending writes land first.
    app.on_cleanup.append(close_db)
    return Coordinator(
        authenticator=authenticator,
        chat_store=SQLiteChatStore(backend),
        social_graph=SQLiteSocialGraph(backend),
        status_store=SQLiteStatusStore(backend),
    )


def create_app(config: GatewayConfig | None = None, *, coordinator: Coordinator | None = None) -> web.Application:
    config = config or GatewayConfig.from_env()
    app = web.Application()

    async def bind_coordinator(app: web.Application) -> None:
        app[RUNTIME_KEY].bind_loop(asyncio.get_running_loop())

    async def close_websockets(app: web.Application) -> None:
        channels = list(app[CHANNELS_KEY])
        await asyncio.gather(
            *(channel.close(code=IDLE_CLOSE_CODE, message="server shutdown") for channel in channels),
            return_exceptions=True,
        )

    async def shutdown_coordinator(app: web.Application) -> None:
        await app[RUNTIME_KEY].shutdown()

    app.on_startup.append(bind_coordinator)
    app.on_shutdown.append(close_websockets)
    app.on_cleanup.append(shutdown_coordinator)

    app[CONFIG_KEY] = config
    app[CHANNELS_KEY] = weakref.WeakSet()
    app[RUNTIME_KEY] = coordinator or _build_coordinator(config, app)

    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)
    app.router.add_get("/v1/presence/online", handle_online)
    app.router.add_get("/v1/users/{user_id}/status", handle_user_status)
    app.router.add_get("/v1/chat/unread", handle_unread)
    if config.push_token:
        app.router.add_post("/v1/events/push", handle_push)
    return app
