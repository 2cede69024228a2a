from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import Field

from app.schemas.base import CamelModel
from app.schemas.user import UserPublic


class MeetingPoint(CamelModel):
    lat: float
    lng: float
    address: Optional[str] = None
    place_name: Optional[str] = None


class MatchRequestCreate(CamelModel):
    target_user_id: UUID
    meeting_reason: str = Field(min_length=5, max_length=200)
    meeting_address: Optional[str] = Field(None, max_length=255)
    meeting_place_name: Optional[str] = Field(None, max_length=255)


class MatchRespondRequest(CamelModel):
    match_id: UUID
    response: Literal["accepted", "rejected"]


class MeetingConfirmRequest(CamelModel):
    meeting_id: UUID


class MeetingRateRequest(CamelModel):
    meeting_id: UUID
    rating: Optional[int] = Field(None, ge=1, le=5)
    notes: Optional[str] = Field(None, max_length=1000)


class MeetingResponse(CamelModel):
    id: UUID
    match_id: UUID
    scheduled_time: datetime
    actual_meeting_time: Optional[datetime] = None
    requester_confirmed: bool
    target_confirmed: bool
    both_confirmed: bool
    meeting_success: bool
    requester_rating: Optional[int] = None
    target_rating: Optional[int] = None
    notes: Optional[str] = None


class MatchResponse(CamelModel):
    id: UUID
    requester: UserPublic
    target: UserPublic
    status: str
    meeting_reason: str
    meeting_point: MeetingPoint
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    meeting: Optional[MeetingResponse] = None


class MatchEnvelope(CamelModel):
    message: str
    match: MatchResponse


class MeetingEnvelope(CamelModel):
    message: str
    meeting: MeetingResponse


class Pagination(CamelModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class MatchHistoryResponse(CamelModel):
    matches: list[MatchResponse]
    pagination: Pagination
