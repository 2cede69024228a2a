"""
Rendezvous — Realtime websocket endpoint.

Clients connect to ``/realtime/ws?token=<access token>``.  A bad token closes
the socket with policy-violation code 1008 before it is accepted.
"""

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.errors import AuthenticationError
from app.services.realtime_service import ClientConnection, RealtimeChannel

logger = structlog.get_logger("rendezvous.api.realtime")

router = APIRouter()

POLICY_VIOLATION = 1008


@router.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket) -> None:
    channel: RealtimeChannel = websocket.app.state.realtime
    token = websocket.query_params.get("token")

    try:
        user = await channel.authenticate(token)
    except AuthenticationError as exc:
        logger.warning("realtime_auth_failed", kind=exc.kind)
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    conn = ClientConnection(websocket, user)

    try:
        await channel.connect(conn, user)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            # Binary frames are decoded as UTF-8 JSON like text frames.
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await channel.handle_message(conn, raw)
    except WebSocketDisconnect as exc:
        logger.info("realtime_client_closed", user_id=str(conn.user_id), code=exc.code)
    finally:
        await channel.disconnect(conn)
