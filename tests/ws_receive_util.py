import asyncio
import json
from typing import Any, Callable, Dict

from aiohttp import ClientWebSocketResponse, WSMessage, WSMsgType


async def _receive_with_deadline(ws: ClientWebSocketResponse, deadline: float) -> WSMessage:
    loop = asyncio.get_running_loop()
    remaining = deadline - loop.time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


def _check_control_message(ws: ClientWebSocketResponse, msg: WSMessage) -> None:
    if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
        raise AssertionError(f"WebSocket closed while waiting for message (code {ws.close_code})")
    if msg.type == WSMsgType.ERROR:
        raise AssertionError(f"WebSocket error while waiting for message: {ws.exception()}")


def _parse_json_payload(msg: WSMessage) -> Any | None:
    if msg.type != WSMsgType.TEXT:
        return None
    try:
        return json.loads(msg.data)
    except ValueError:
        return None


async def recv_json_until(
    ws: ClientWebSocketResponse,
    *,
    deadline: float,
    predicate: Callable[[Any], bool],
) -> Any:
    while True:
        msg = await _receive_with_deadline(ws, deadline)
        _check_control_message(ws, msg)
        payload = _parse_json_payload(msg)
        if payload is None:
            continue
        if predicate(payload):
            return payload


async def recv_event(ws: ClientWebSocketResponse, kind: str, *, timeout: float = 2.0) -> Dict[str, Any]:
    """Skip frames until one of ``kind`` arrives and return its data."""

    deadline = asyncio.get_running_loop().time() + timeout
    payload = await recv_json_until(
        ws, deadline=deadline, predicate=lambda p: isinstance(p, dict) and p.get("kind") == kind
    )
    return payload["data"]


async def assert_no_app_messages(ws: ClientWebSocketResponse, *, timeout: float) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            return
        _check_control_message(ws, msg)
        payload = _parse_json_payload(msg)
        if payload is None:
            continue
        raise AssertionError(f"Unexpected websocket message: {payload}")


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before deadline")
        await asyncio.sleep(0.01)
