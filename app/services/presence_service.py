"""
Rendezvous — Presence registry.

Maps a verified identity to its live realtime connection handle and mirrors
online/offline transitions into the user store (``is_online``, ``socket_id``,
``last_seen``).  One registry is constructed per application lifetime and
passed explicitly to whatever needs to reach connected users.

The in-memory map is the only routing source for targeted emits; the durable
``is_online`` flag is what proximity queries read.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Protocol

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.utils.clock import utcnow

logger = structlog.get_logger("rendezvous.presence_service")


class ConnectionHandle(Protocol):
    """Anything that can push an event to one live client."""

    id: str
    user_id: uuid.UUID

    async def send(self, event: str, data: Any) -> None: ...


class PresenceRegistry:
    """Identity → live connection handle, with store mirroring."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory
        self._by_user: dict[uuid.UUID, ConnectionHandle] = {}
        self._handles: dict[str, ConnectionHandle] = {}
        self._lock = asyncio.Lock()

    # ── Registration ──────────────────────────────────────────────────────

    async def mark_online(self, user_id: uuid.UUID, handle: ConnectionHandle) -> None:
        async with self._lock:
            self._by_user[user_id] = handle
            self._handles[handle.id] = handle

        await self._persist(user_id, is_online=True, socket_id=handle.id)
        logger.info("user_online", user_id=str(user_id), connection_id=handle.id)

    async def mark_offline(
        self, user_id: uuid.UUID, handle: ConnectionHandle | None = None
    ) -> None:
        """Drop the user's routing entry and persist them as offline.

        When ``handle`` is given only that connection is unregistered; a newer
        connection for the same user keeps its routing entry.  The stored
        flag is cleared either way.
        """
        async with self._lock:
            if handle is not None:
                self._handles.pop(handle.id, None)
                if self._by_user.get(user_id) is handle:
                    del self._by_user[user_id]
            else:
                current = self._by_user.pop(user_id, None)
                if current is not None:
                    self._handles.pop(current.id, None)

        await self._persist(user_id, is_online=False, socket_id=None)
        logger.info("user_offline", user_id=str(user_id))

    def lookup(self, user_id: uuid.UUID) -> ConnectionHandle | None:
        return self._by_user.get(user_id)

    def is_connected(self, user_id: uuid.UUID) -> bool:
        return user_id in self._by_user

    @property
    def connection_count(self) -> int:
        return len(self._handles)

    def connections(self) -> list[ConnectionHandle]:
        return list(self._handles.values())

    # ── Delivery ──────────────────────────────────────────────────────────

    async def emit_to_user(self, user_id: uuid.UUID, event: str, data: Any) -> bool:
        """Send ``event`` to the user's live connection; False if not connected."""
        handle = self.lookup(user_id)
        if handle is None:
            logger.debug("emit_skipped_offline", user_id=str(user_id), event_name=event)
            return False
        await handle.send(event, data)
        return True

    async def broadcast(
        self,
        event: str,
        data: Any,
        exclude: uuid.UUID | None = None,
    ) -> int:
        """Fan ``event`` out to every connection except those of ``exclude``."""
        targets = [h for h in self.connections() if h.user_id != exclude]
        if targets:
            await asyncio.gather(*(h.send(event, data) for h in targets))
        return len(targets)

    # ── Store mirroring ───────────────────────────────────────────────────

    async def reset_store(self) -> int:
        """Mark every stored user offline; run once at startup."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.is_online.is_(True))
                .values(is_online=False, socket_id=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        count = result.rowcount or 0
        logger.info("presence_store_reset", users=count)
        return count

    async def _persist(
        self, user_id: uuid.UUID, is_online: bool, socket_id: str | None
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(is_online=is_online, socket_id=socket_id, last_seen=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
