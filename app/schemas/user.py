from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import Field

from app.schemas.base import CamelModel

Gender = Literal["male", "female", "other"]


class Location(CamelModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class UserPublic(CamelModel):
    id: UUID
    name: str
    gender: str
    profile_photo: str = ""
    bio: str = ""
    is_online: bool
    last_seen: Optional[datetime] = None
    match_count: int = 0
    actual_meet_count: int = 0
    location: Optional[Location] = None


class UserPrivate(UserPublic):
    phone_number: str
    address: str
    sms_verified: bool
    created_at: Optional[datetime] = None


class NearbyUserItem(UserPublic):
    distance: int


class NearbyUsersResponse(CamelModel):
    users: list[NearbyUserItem]
    count: int
    radius: int


class LocationUpdateRequest(CamelModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=255)


class LocationUpdateResponse(CamelModel):
    success: bool = True
    location: Location
    address: Optional[str] = None


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    bio: Optional[str] = Field(None, max_length=500)
    profile_photo: Optional[str] = Field(None, max_length=2048)
    address: Optional[str] = Field(None, min_length=1, max_length=255)


class StatusUpdateRequest(CamelModel):
    is_online: bool


class UserEnvelope(CamelModel):
    user: UserPrivate


class PublicUserEnvelope(CamelModel):
    user: UserPublic
