"""
Rendezvous — Realtime channel protocol.

Each connected client exchanges JSON frames ``{"event": str, "data": any}``
with the server.  The websocket transport lives in ``app.api.realtime``; this
module owns everything above it:

  - handshake (token → verified user) and presence registration
  - per-event handlers (location push, rooms, proximity alerts, location
    sharing, ping/pong)
  - the server heartbeat
  - disconnect cleanup, which always runs

Frames from one connection are handled serially by its receive loop.  Sends
to one connection are serialised by that connection's lock so events arrive
in the order they were emitted.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.errors import RendezvousError, ValidationError
from app.models.user import User
from app.services.geo_service import GeoIndex
from app.services.presence_service import PresenceRegistry
from app.services.verification_service import VerificationGate
from app.utils.clock import utcnow

logger = structlog.get_logger("rendezvous.realtime_service")


def _timestamp() -> str:
    return utcnow().isoformat()


class ClientConnection:
    """One authenticated websocket client."""

    def __init__(self, websocket: WebSocket, user: User) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id: uuid.UUID = user.id
        self.user_name: str = user.name
        self.rooms: set[str] = set()
        self.share_timers: set[asyncio.Task] = set()
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, data: Any) -> None:
        if self.closed:
            return
        async with self._send_lock:
            if self.websocket.application_state != WebSocketState.CONNECTED:
                self.closed = True
                return
            try:
                await self.websocket.send_json({"event": event, "data": data})
            except (WebSocketDisconnect, RuntimeError) as exc:
                # Peer went away between the state check and the write.
                self.closed = True
                logger.debug(
                    "send_on_closed_connection",
                    connection_id=self.id,
                    event_name=event,
                    error=str(exc),
                )


Handler = Callable[[ClientConnection, Any], Awaitable[None]]


class RealtimeChannel:
    """Dispatches client events and keeps rooms, timers and heartbeat."""

    def __init__(
        self,
        presence: PresenceRegistry,
        gate: VerificationGate,
        session_factory: Callable[[], AsyncSession],
        geo_index: GeoIndex | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.presence = presence
        self.gate = gate
        self.session_factory = session_factory
        self.geo_index = geo_index or GeoIndex()
        self.settings = settings or get_settings()
        self.rooms: dict[str, set[ClientConnection]] = {}

        self._handlers: dict[str, Handler] = {
            "updateLocation": self.on_update_location,
            "joinRoom": self.on_join_room,
            "leaveRoom": self.on_leave_room,
            "sendMessage": self.on_send_message,
            "approachingMeeting": self.on_approaching_meeting,
            "requestLocationShare": self.on_request_location_share,
            "shareLocation": self.on_share_location,
            "ping": self.on_ping,
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def authenticate(self, token: str | None) -> User:
        """Resolve a handshake token; raises ``AuthenticationError``."""
        async with self.session_factory() as session:
            return await self.gate.authenticate(session, token)

    async def connect(self, conn: ClientConnection, user: User) -> None:
        await self.presence.mark_online(user.id, conn)
        await self.presence.broadcast(
            "userOnline",
            {
                "userId": str(user.id),
                "name": user.name,
                "location": user.location,
                "profilePhoto": user.profile_photo,
            },
            exclude=user.id,
        )
        logger.info("realtime_connected", user_id=str(user.id), connection_id=conn.id)

    async def disconnect(self, conn: ClientConnection) -> None:
        """Tear down one connection; safe to call after an abrupt close."""
        conn.closed = True
        for task in list(conn.share_timers):
            task.cancel()
        conn.share_timers.clear()

        for room_id in list(conn.rooms):
            self._leave(conn, room_id)

        try:
            await self.presence.mark_offline(conn.user_id, conn)
        except Exception:
            logger.exception("disconnect_persist_failed", user_id=str(conn.user_id))

        await self.presence.broadcast(
            "userOffline",
            {"userId": str(conn.user_id), "lastSeen": _timestamp()},
            exclude=conn.user_id,
        )
        logger.info(
            "realtime_disconnected", user_id=str(conn.user_id), connection_id=conn.id
        )

    async def run_heartbeat(self) -> None:
        """Ping every connection on a fixed interval until cancelled."""
        interval = self.settings.HEARTBEAT_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            sent = await self.presence.broadcast("ping", {"timestamp": _timestamp()})
            logger.debug("heartbeat_sent", connections=sent)

    # ── Dispatch ──────────────────────────────────────────────────────────

    async def handle_message(self, conn: ClientConnection, raw: str | bytes) -> None:
        """Decode one text or UTF-8 binary frame and run its handler.

        Malformed frames, unknown events and handler errors are reported to
        the sender as an ``error`` event; the connection stays open.
        """
        try:
            frame = json.loads(raw)
        except ValueError:
            await conn.send("error", {"message": "Malformed frame"})
            return

        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await conn.send("error", {"message": "Malformed frame"})
            return

        event = frame["event"]
        handler = self._handlers.get(event)
        if handler is None:
            await conn.send("error", {"message": f"Unknown event: {event}"})
            return

        try:
            await handler(conn, frame.get("data"))
        except RendezvousError as exc:
            logger.info(
                "realtime_event_rejected",
                event_name=event,
                kind=exc.kind,
                user_id=str(conn.user_id),
            )
            await conn.send("error", {"message": exc.kind, "event": event})
        except Exception:
            logger.exception("realtime_event_failed", event_name=event, user_id=str(conn.user_id))
            await conn.send("error", {"message": "Internal error", "event": event})

    # ── Event handlers ────────────────────────────────────────────────────

    async def on_update_location(self, conn: ClientConnection, data: Any) -> None:
        payload = _require_dict(data)
        async with self.session_factory() as session:
            user = await self.geo_index.update_location(
                session, conn.user_id, payload.get("lat"), payload.get("lng")
            )
            await session.commit()
            location = {"lat": user.latitude, "lng": user.longitude}

        await self.presence.broadcast(
            "userLocationUpdate",
            {"userId": str(conn.user_id), "location": location, "timestamp": _timestamp()},
            exclude=conn.user_id,
        )
        await conn.send("locationUpdated", {"success": True, "location": location})

    async def on_join_room(self, conn: ClientConnection, data: Any) -> None:
        room_id = _room_id(data)
        self.rooms.setdefault(room_id, set()).add(conn)
        conn.rooms.add(room_id)
        logger.debug("room_joined", room_id=room_id, user_id=str(conn.user_id))

    async def on_leave_room(self, conn: ClientConnection, data: Any) -> None:
        self._leave(conn, _room_id(data))

    async def on_send_message(self, conn: ClientConnection, data: Any) -> None:
        payload = _require_dict(data)
        room_id = _room_id(payload.get("roomId"))
        message = {
            "roomId": room_id,
            "senderId": str(conn.user_id),
            "senderName": conn.user_name,
            "message": payload.get("message", payload.get("text")),
            "timestamp": _timestamp(),
        }
        members = [m for m in self.rooms.get(room_id, ()) if m is not conn]
        for member in members:
            await member.send("newMessage", message)

    async def on_approaching_meeting(self, conn: ClientConnection, data: Any) -> None:
        payload = _require_dict(data)
        await self.presence.broadcast(
            "userApproachingMeeting",
            {
                "matchId": payload.get("matchId"),
                "userId": str(conn.user_id),
                "userName": conn.user_name,
                "distance": payload.get("distance"),
                "timestamp": _timestamp(),
            },
        )

    async def on_request_location_share(self, conn: ClientConnection, data: Any) -> None:
        target_id = _target_id(data)
        handle = self.presence.lookup(target_id) if target_id else None
        if handle is None:
            return
        await handle.send(
            "locationShareRequest",
            {"requesterId": str(conn.user_id), "requesterName": conn.user_name},
        )

    async def on_share_location(self, conn: ClientConnection, data: Any) -> None:
        payload = _require_dict(data)
        target_id = _target_id(payload)
        handle = self.presence.lookup(target_id) if target_id else None
        if handle is None:
            return

        duration_ms = self._share_duration_ms(payload.get("duration"))
        expires_at = utcnow() + timedelta(milliseconds=duration_ms)
        await handle.send(
            "locationShared",
            {
                "senderId": str(conn.user_id),
                "senderName": conn.user_name,
                "location": payload.get("location"),
                "expiresAt": expires_at.isoformat(),
            },
        )

        task = asyncio.create_task(self._expire_share(conn, handle, duration_ms))
        conn.share_timers.add(task)
        task.add_done_callback(conn.share_timers.discard)

    async def on_ping(self, conn: ClientConnection, data: Any) -> None:
        await conn.send("pong", {"timestamp": _timestamp()})

    # ── Helpers ───────────────────────────────────────────────────────────

    def _leave(self, conn: ClientConnection, room_id: str) -> None:
        conn.rooms.discard(room_id)
        members = self.rooms.get(room_id)
        if members is None:
            return
        members.discard(conn)
        if not members:
            del self.rooms[room_id]

    def _share_duration_ms(self, value: Any) -> int:
        if value is None:
            return self.settings.LOCATION_SHARE_DEFAULT_MS
        try:
            duration = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError("invalid_duration") from exc
        if duration <= 0:
            raise ValidationError("invalid_duration")
        return min(duration, self.settings.LOCATION_SHARE_MAX_MS)

    @staticmethod
    async def _expire_share(sharer: ClientConnection, target, duration_ms: int) -> None:
        await asyncio.sleep(duration_ms / 1000)
        await target.send("locationShareExpired", {"senderId": str(sharer.user_id)})


# ──────────────────────────────────────────────────────────────────────────────
# Payload parsing
# ──────────────────────────────────────────────────────────────────────────────

def _require_dict(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("malformed_payload")
    return data


def _room_id(data: Any) -> str:
    if isinstance(data, dict):
        data = data.get("roomId")
    if not isinstance(data, str) or not data:
        raise ValidationError("invalid_room")
    return data


def _target_id(data: Any) -> uuid.UUID | None:
    if isinstance(data, dict):
        data = data.get("targetUserId")
    try:
        return uuid.UUID(str(data))
    except ValueError:
        return None
