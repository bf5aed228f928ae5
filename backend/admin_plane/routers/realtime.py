"""
Realtime router for the admin control plane.

One websocket per admin dashboard. The client presents the same bearer
token as HTTP (query parameter `token` or an Authorization header), then
sends `{"type": "subscribe:<topic>"}`, `{"type": "unsubscribe", "channel": <topic>}`
or `{"type": "ping"}`. Server events arrive as `{type, data, timestamp}`.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from admin_plane.core.errors import AUTH_KINDS, AdminError
from admin_plane.core.security import extract_bearer
from admin_plane.models.user import Role
from admin_plane.services.realtime import Connection, Topic, envelope


logger = logging.getLogger(__name__)

router = APIRouter()

# Close codes: 44xx mirror the HTTP status of the failure
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_HEARTBEAT = 4408
CLOSE_NORMAL = 1000

DISCONNECT_CODES = {
    "suspended": CLOSE_FORBIDDEN,
    "token expired": CLOSE_UNAUTHORIZED,
    "heartbeat timeout": CLOSE_HEARTBEAT,
}


def _token(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    header = websocket.headers.get("authorization")
    return extract_bearer(header) if header else None


def handle_client_message(connection: Connection, message: Any) -> Optional[Dict[str, Any]]:
    """
    Apply one client message to the connection.

    Returns the reply to send, if any.
    """
    connection.touch()
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        return envelope("error", {"message": "Messages must be JSON objects with a type"})

    kind = message["type"]
    if kind == "ping":
        return envelope("pong", None)
    if kind.startswith("subscribe:"):
        name = kind.split(":", 1)[1]
        try:
            topic = Topic(name)
        except ValueError:
            return envelope("error", {"message": f"Unknown topic: {name}"})
        connection.subscribe(topic)
        return envelope("subscribed", {"channel": topic.value})
    if kind == "unsubscribe":
        try:
            topic = Topic(message.get("channel"))
        except ValueError:
            return envelope("error", {"message": f"Unknown topic: {message.get('channel')}"})
        connection.unsubscribe(topic)
        return envelope("unsubscribed", {"channel": topic.value})
    return envelope("error", {"message": f"Unknown message type: {kind}"})


async def _receive(websocket: WebSocket, connection: Connection) -> None:
    while not connection.closed:
        try:
            message = await websocket.receive_json()
        except ValueError:
            message = None
        reply = handle_client_message(connection, message)
        if reply is not None:
            connection.enqueue(reply)


async def _send(websocket: WebSocket, connection: Connection) -> None:
    while True:
        message = await connection.next_message()
        if message is None:
            return
        await websocket.send_json(message)


@router.websocket("/ws")
async def admin_socket(websocket: WebSocket, token: Optional[str] = None) -> None:
    """
    Authenticated realtime channel for super admins.
    """
    services = websocket.app.state.services
    try:
        bearer = _token(websocket, token)
        principal = await asyncio.to_thread(services.identity.verify, bearer, Role.SUPER_ADMIN)
    except AdminError as exc:
        code = CLOSE_UNAUTHORIZED if exc.kind in AUTH_KINDS else CLOSE_FORBIDDEN
        logger.info(f"Realtime handshake rejected: {exc.kind.value}")
        await websocket.close(code=code, reason=exc.kind.value)
        return

    await websocket.accept()
    connection = services.multiplexer.register(principal)
    connection.enqueue(envelope("connected", {
        "connectionId": connection.id,
        "userId": principal.sub,
        "topics": [t.value for t in Topic],
    }))

    tasks = [
        asyncio.create_task(_receive(websocket, connection)),
        asyncio.create_task(_send(websocket, connection)),
    ]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Realtime connection {connection.id} failed: {exc!r}")
        if connection.closed:
            # Server-initiated: heartbeat, expiry or suspension
            code = DISCONNECT_CODES.get(connection.close_reason or "", CLOSE_NORMAL)
            await websocket.close(code=code, reason=connection.close_reason or "")
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        for task in tasks:
            task.cancel()
        connection.disconnect(connection.close_reason or "client closed")
        services.multiplexer.unregister(connection)
