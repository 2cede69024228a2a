from datetime import datetime
from typing import Optional
from uuid import UUID

from app.schemas.base import CamelModel
from app.schemas.user import Location


class Marker(CamelModel):
    color: str
    icon: str
    size: str


class MapUser(CamelModel):
    id: UUID
    name: str
    gender: str
    profile_photo: str
    bio: str
    location: Location
    distance: int
    is_online: bool
    last_seen: Optional[datetime] = None
    match_count: int
    marker: Marker


class MapDataResponse(CamelModel):
    users: list[MapUser]
    center: Location
    radius: int
    count: int


class MapLocationResponse(CamelModel):
    lat: float
    lng: float
    address: str
