"""
Rendezvous — Map API

Static display configuration plus map-scoped proximity and the caller's own
location.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_map_service, get_presence
from app.database import get_db
from app.models.user import User
from app.schemas.map import MapDataResponse, MapLocationResponse
from app.schemas.user import LocationUpdateRequest, LocationUpdateResponse
from app.services.map_service import MapService, map_config
from app.services.presence_service import PresenceRegistry
from app.utils.clock import utcnow

logger = structlog.get_logger("rendezvous.api.map")

router = APIRouter()


@router.get("/config", summary="Map display configuration")
async def get_map_config() -> dict:
    return {"config": map_config()}


@router.get("/data", response_model=MapDataResponse, summary="Users to show on the map")
async def get_map_data(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius: Optional[float] = Query(None, gt=0, description="Radius in metres"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    map_service: MapService = Depends(get_map_service),
) -> dict:
    return await map_service.get_map_data(db, current_user, lat=lat, lng=lng, radius_m=radius)


@router.get("/location", response_model=MapLocationResponse, summary="The caller's location")
async def get_location(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    map_service: MapService = Depends(get_map_service),
) -> MapLocationResponse:
    lat, lng, address = await map_service.geo_index.get_location(db, current_user.id)
    return MapLocationResponse(lat=lat, lng=lng, address=address)


@router.post("/location", response_model=LocationUpdateResponse, summary="Move the caller")
async def update_location(
    payload: LocationUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    map_service: MapService = Depends(get_map_service),
    presence: PresenceRegistry = Depends(get_presence),
) -> LocationUpdateResponse:
    user = await map_service.geo_index.update_location(
        db, current_user.id, payload.lat, payload.lng, address=payload.address
    )
    await db.commit()

    location = {"lat": user.latitude, "lng": user.longitude}
    await presence.broadcast(
        "userLocationUpdate",
        {"userId": str(user.id), "location": location, "timestamp": utcnow().isoformat()},
        exclude=user.id,
    )
    logger.info("map_location_updated", user_id=str(user.id))
    return LocationUpdateResponse(location=location, address=user.address)
