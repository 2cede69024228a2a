"""
Rendezvous — Users API

Proximity search, location updates, public profiles, profile edits and the
online-status toggle.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_presence
from app.config import get_settings
from app.database import get_db
from app.errors import NotFoundError
from app.models.user import User
from app.schemas.user import (
    LocationUpdateRequest,
    LocationUpdateResponse,
    NearbyUserItem,
    NearbyUsersResponse,
    ProfileUpdateRequest,
    PublicUserEnvelope,
    StatusUpdateRequest,
    UserEnvelope,
    UserPrivate,
    UserPublic,
)
from app.services.geo_service import GeoIndex, clamp_radius
from app.services.presence_service import PresenceRegistry
from app.utils.clock import utcnow

logger = structlog.get_logger("rendezvous.api.users")

router = APIRouter()

_geo_index = GeoIndex()


# ──────────────────────────────────────────────────────────────────────────────
# GET /nearby — Online users around a point
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/nearby",
    response_model=NearbyUsersResponse,
    summary="Find nearby online users",
)
async def nearby_users(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: Optional[float] = Query(None, gt=0, description="Search radius in metres"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> NearbyUsersResponse:
    """Return verified online users within ``radius`` metres, nearest first."""
    settings = get_settings()
    radius_m = clamp_radius(
        radius if radius is not None else settings.NEARBY_DEFAULT_RADIUS_M,
        settings.NEARBY_MIN_RADIUS_M,
        settings.NEARBY_MAX_RADIUS_M,
    )

    nearby = await _geo_index.find_nearby(
        db, lat, lng, radius_m, exclude_id=current_user.id, online_only=True
    )
    items = [
        NearbyUserItem(
            **UserPublic.model_validate(entry.user).model_dump(),
            distance=round(entry.distance_m),
        )
        for entry in nearby
    ]
    return NearbyUsersResponse(users=items, count=len(items), radius=int(radius_m))


# ──────────────────────────────────────────────────────────────────────────────
# POST /update-location — Persist the caller's position
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/update-location",
    response_model=LocationUpdateResponse,
    summary="Update the caller's location",
)
async def update_location(
    payload: LocationUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    presence: PresenceRegistry = Depends(get_presence),
) -> LocationUpdateResponse:
    """Persist the position, mark the caller online and notify others."""
    user = await _geo_index.update_location(
        db,
        current_user.id,
        payload.lat,
        payload.lng,
        address=payload.address,
        mark_online=True,
    )
    await db.commit()

    location = {"lat": user.latitude, "lng": user.longitude}
    await presence.broadcast(
        "userLocationUpdate",
        {"userId": str(user.id), "location": location, "timestamp": utcnow().isoformat()},
        exclude=user.id,
    )
    return LocationUpdateResponse(location=location, address=user.address)


# ──────────────────────────────────────────────────────────────────────────────
# Profiles
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/profile/{user_id}",
    response_model=PublicUserEnvelope,
    summary="Public profile of a user",
)
async def get_profile(
    user_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PublicUserEnvelope:
    user = await db.get(User, user_id)
    if user is None or not user.sms_verified:
        raise NotFoundError("user_not_found", user_id=str(user_id))
    return PublicUserEnvelope(user=UserPublic.model_validate(user))


@router.put(
    "/profile",
    response_model=UserEnvelope,
    summary="Update the caller's profile",
)
async def update_profile(
    payload: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> UserEnvelope:
    """Partial update: only the fields present in the body change."""
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    for field_name, value in changes.items():
        setattr(current_user, field_name, value)

    await db.commit()
    await db.refresh(current_user)
    logger.info("profile_updated", user_id=str(current_user.id), fields=sorted(changes))
    return UserEnvelope(user=UserPrivate.model_validate(current_user))


# ──────────────────────────────────────────────────────────────────────────────
# POST /status — Toggle the online flag
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/status",
    response_model=UserEnvelope,
    summary="Set the caller's online status",
)
async def update_status(
    payload: StatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    presence: PresenceRegistry = Depends(get_presence),
) -> UserEnvelope:
    current_user.is_online = payload.is_online
    current_user.last_seen = utcnow()
    await db.commit()
    await db.refresh(current_user)

    await presence.broadcast(
        "userStatusUpdate",
        {
            "userId": str(current_user.id),
            "isOnline": current_user.is_online,
            "lastSeen": current_user.last_seen.isoformat(),
        },
        exclude=current_user.id,
    )
    return UserEnvelope(user=UserPrivate.model_validate(current_user))
