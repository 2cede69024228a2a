"""
Rendezvous — Shared API dependencies.

Lifetime-scoped services are built once in the application lifespan and kept
on ``app.state``; these helpers hand them to route functions.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.rate_limit import VerificationRateGate
from app.database import get_db
from app.models.user import User
from app.services.map_service import MapService
from app.services.matching_service import MatchCoordinator
from app.services.presence_service import PresenceRegistry
from app.services.verification_service import VerificationGate

_bearer = HTTPBearer(auto_error=False)


def get_verification_gate(request: Request) -> VerificationGate:
    return request.app.state.verification_gate


def get_rate_gate(request: Request) -> VerificationRateGate:
    return request.app.state.verification_rate_gate


def get_presence(request: Request) -> PresenceRegistry:
    return request.app.state.presence


def get_coordinator(request: Request) -> MatchCoordinator:
    return request.app.state.match_coordinator


def get_map_service(request: Request) -> MapService:
    return request.app.state.map_service


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    db: AsyncSession = Depends(get_db),
    gate: VerificationGate = Depends(get_verification_gate),
) -> User:
    """Resolve the bearer access token to a verified ``User``."""
    token = credentials.credentials if credentials else None
    return await gate.authenticate(db, token)
