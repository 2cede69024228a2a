"""
Rendezvous — Matching API

Match requests, responses, history, and meeting confirmation / rating.
All state transitions are delegated to ``MatchCoordinator``.
"""

from __future__ import annotations

from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_coordinator, get_current_user
from app.database import get_db
from app.models.match import Match, Meeting
from app.models.user import User
from app.schemas.match import (
    MatchEnvelope,
    MatchHistoryResponse,
    MatchRequestCreate,
    MatchRespondRequest,
    MatchResponse,
    MeetingConfirmRequest,
    MeetingEnvelope,
    MeetingRateRequest,
    MeetingResponse,
    Pagination,
)
from app.services.matching_service import MatchCoordinator

logger = structlog.get_logger("rendezvous.api.matching")

router = APIRouter()


def _match_response(match: Match, meeting: Meeting | None = None) -> MatchResponse:
    response = MatchResponse.model_validate(match)
    if meeting is not None:
        response.meeting = MeetingResponse.model_validate(meeting)
    return response


# ──────────────────────────────────────────────────────────────────────────────
# POST /request — Send a match request
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/request",
    response_model=MatchEnvelope,
    status_code=status.HTTP_201_CREATED,
    summary="Request a match with an online user",
)
async def request_match(
    payload: MatchRequestCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    coordinator: MatchCoordinator = Depends(get_coordinator),
) -> MatchEnvelope:
    match = await coordinator.request_match(
        db,
        current_user,
        payload.target_user_id,
        payload.meeting_reason,
        meeting_address=payload.meeting_address,
        meeting_place_name=payload.meeting_place_name,
    )
    return MatchEnvelope(message="Match request sent", match=_match_response(match))


# ──────────────────────────────────────────────────────────────────────────────
# POST /respond — Accept or reject
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/respond",
    response_model=MatchEnvelope,
    summary="Accept or reject a pending match",
)
async def respond_to_match(
    payload: MatchRespondRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    coordinator: MatchCoordinator = Depends(get_coordinator),
) -> MatchEnvelope:
    outcome = await coordinator.respond_to_match(
        db, current_user, payload.match_id, payload.response
    )
    return MatchEnvelope(
        message=f"Match {payload.response}",
        match=_match_response(outcome.match, outcome.meeting),
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /history — Paginated match history
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/history",
    response_model=MatchHistoryResponse,
    summary="Matches the caller took part in",
)
async def match_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100, description="Page size"),
    status_filter: Optional[Literal["pending", "accepted", "rejected", "expired"]] = Query(
        None, alias="status"
    ),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    coordinator: MatchCoordinator = Depends(get_coordinator),
) -> MatchHistoryResponse:
    history = await coordinator.get_history(
        db, current_user, page=page, page_size=limit, status=status_filter
    )
    return MatchHistoryResponse(
        matches=[_match_response(entry.match, entry.meeting) for entry in history.matches],
        pagination=Pagination(
            page=history.page,
            page_size=history.page_size,
            total=history.total,
            total_pages=history.total_pages,
        ),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Meetings
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/confirm-meeting",
    response_model=MeetingEnvelope,
    summary="Confirm that the meeting happened",
)
async def confirm_meeting(
    payload: MeetingConfirmRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    coordinator: MatchCoordinator = Depends(get_coordinator),
) -> MeetingEnvelope:
    meeting = await coordinator.confirm_meeting(db, current_user, payload.meeting_id)
    return MeetingEnvelope(
        message="Meeting confirmed", meeting=MeetingResponse.model_validate(meeting)
    )


@router.post(
    "/rate-meeting",
    response_model=MeetingEnvelope,
    summary="Rate a meeting and leave notes",
)
async def rate_meeting(
    payload: MeetingRateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    coordinator: MatchCoordinator = Depends(get_coordinator),
) -> MeetingEnvelope:
    meeting = await coordinator.rate_meeting(
        db, current_user, payload.meeting_id, rating=payload.rating, notes=payload.notes
    )
    return MeetingEnvelope(
        message="Meeting rated", meeting=MeetingResponse.model_validate(meeting)
    )
