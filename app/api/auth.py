"""
Rendezvous — Auth API

Phone-number registration and login, each a two-step exchange: request a
code, then submit it for a token pair.  Session validation and token
rotation live here too.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_rate_gate, get_verification_gate
from app.api.rate_limit import VerificationRateGate
from app.database import get_db
from app.models.user import User
from app.schemas.auth import (
    LoginRequest,
    PendingVerificationResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
    ValidateResponse,
    VerifiedSessionResponse,
    VerifyCodeRequest,
)
from app.schemas.user import UserEnvelope, UserPrivate
from app.services.verification_service import VerificationGate, VerifiedSession

logger = structlog.get_logger("rendezvous.api.auth")

router = APIRouter()


def _session_response(session: VerifiedSession, **flags: bool) -> VerifiedSessionResponse:
    return VerifiedSessionResponse(
        access_token=session.tokens.access_token,
        refresh_token=session.tokens.refresh_token,
        user=UserPrivate.model_validate(session.user),
        **flags,
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /register — Issue a registration code
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/register",
    response_model=PendingVerificationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start phone registration",
)
async def register(
    payload: RegisterRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: VerificationGate = Depends(get_verification_gate),
    rate_gate: VerificationRateGate = Depends(get_rate_gate),
) -> PendingVerificationResponse:
    """Create or refresh a pending identity and send it a 6-digit code."""
    await rate_gate.check_request(request, payload.phone_number)

    pending = await gate.request_registration_code(
        db,
        name=payload.name,
        phone_number=payload.phone_number,
        gender=payload.gender,
        address=payload.address,
    )
    return PendingVerificationResponse(
        message="Verification code sent to your phone",
        user_id=pending.user_id,
        phone_number=pending.phone_number,
        requires_verification=pending.requires_verification,
        is_new_user=pending.is_new_user,
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /verify-sms — Complete registration
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/verify-sms",
    response_model=VerifiedSessionResponse,
    response_model_exclude_none=True,
    summary="Submit a registration code",
)
async def verify_sms(
    payload: VerifyCodeRequest,
    db: AsyncSession = Depends(get_db),
    gate: VerificationGate = Depends(get_verification_gate),
) -> VerifiedSessionResponse:
    session = await gate.submit_registration_code(db, payload.user_id, payload.code)
    return _session_response(session, is_registration_complete=True)


# ──────────────────────────────────────────────────────────────────────────────
# POST /login — Issue a login code
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/login",
    response_model=PendingVerificationResponse,
    summary="Start phone login",
)
async def login(
    payload: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: VerificationGate = Depends(get_verification_gate),
    rate_gate: VerificationRateGate = Depends(get_rate_gate),
) -> PendingVerificationResponse:
    await rate_gate.check_request(request, payload.phone_number)

    pending = await gate.request_login_code(db, payload.phone_number)
    return PendingVerificationResponse(
        message="Login code sent to your phone",
        user_id=pending.user_id,
        phone_number=pending.phone_number,
        requires_verification=pending.requires_verification,
        is_new_user=pending.is_new_user,
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /verify-login — Complete login
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/verify-login",
    response_model=VerifiedSessionResponse,
    response_model_exclude_none=True,
    summary="Submit a login code",
)
async def verify_login(
    payload: VerifyCodeRequest,
    db: AsyncSession = Depends(get_db),
    gate: VerificationGate = Depends(get_verification_gate),
) -> VerifiedSessionResponse:
    session = await gate.submit_login_code(db, payload.user_id, payload.code)
    return _session_response(session, is_login_complete=True)


# ──────────────────────────────────────────────────────────────────────────────
# Session endpoints
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/validate", response_model=ValidateResponse, summary="Validate the bearer token")
async def validate(current_user: User = Depends(get_current_user)) -> ValidateResponse:
    return ValidateResponse(
        is_authenticated=True, user=UserPrivate.model_validate(current_user)
    )


@router.get("/me", response_model=UserEnvelope, summary="Current user")
async def me(current_user: User = Depends(get_current_user)) -> UserEnvelope:
    return UserEnvelope(user=UserPrivate.model_validate(current_user))


@router.post("/refresh", response_model=TokenPairResponse, summary="Rotate the token pair")
async def refresh(
    payload: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    gate: VerificationGate = Depends(get_verification_gate),
) -> TokenPairResponse:
    session = await gate.refresh(db, payload.refresh_token)
    logger.info("tokens_refreshed", user_id=str(session.user.id))
    return TokenPairResponse(
        access_token=session.tokens.access_token,
        refresh_token=session.tokens.refresh_token,
    )
