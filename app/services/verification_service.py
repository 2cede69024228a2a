"""
Rendezvous — Phone verification gate and session tokens.

State per user::

    Unverified --(code issued)--> PendingVerification --(correct code)--> Verified

A 6-digit code is drawn uniformly from [100000, 999999] and expires after
``SMS_CODE_TTL_MINUTES``.  Only one code is in flight per identity; issuing
a new one overwrites the old.  Consuming a code is a single conditional
UPDATE (code matches, not expired) so two concurrent submissions cannot both
succeed.

Delivery failures are environment-sensitive: strict environments roll back
the pending state and raise ``DeliveryFailed``; permissive environments keep
the stored code so it can be retrieved out-of-band.
"""

from __future__ import annotations

import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.errors import (
    AlreadyRegistered,
    AlreadyVerified,
    AuthenticationError,
    CodeExpired,
    DeliveryFailed,
    InvalidCode,
    InvalidRefreshToken,
    NotFoundError,
    NotRegistered,
    NotVerified,
)
from app.models.user import User
from app.services.notifier_service import Notifier
from app.utils.clock import ensure_utc, utcnow
from app.utils.encryption import ACCESS, REFRESH, TokenError, open_token, seal_token

logger = structlog.get_logger("rendezvous.verification_service")


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class PendingVerification:
    user_id: uuid.UUID
    phone_number: str
    is_new_user: bool
    requires_verification: bool = True


@dataclass(frozen=True)
class VerifiedSession:
    user: User
    tokens: TokenPair


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class VerificationGate:
    """Issue and check verification codes; mint and rotate token pairs."""

    def __init__(self, notifier: Notifier, settings: Settings | None = None) -> None:
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.code_ttl = timedelta(minutes=self.settings.SMS_CODE_TTL_MINUTES)

    # ── Code issuance ─────────────────────────────────────────────────────

    async def request_registration_code(
        self,
        db_session: AsyncSession,
        name: str,
        phone_number: str,
        gender: str,
        address: str,
    ) -> PendingVerification:
        """Create or refresh an unverified identity and send it a code."""
        log = logger.bind(phone_number=phone_number)
        log.info("registration_code_requested")

        user = await self._find_by_phone(db_session, phone_number)
        if user is not None and user.sms_verified:
            log.warning("registration_already_registered")
            raise AlreadyRegistered()

        code = generate_code()
        expiry = utcnow() + self.code_ttl

        if user is None:
            user = User(
                name=name,
                phone_number=phone_number,
                gender=gender,
                address=address,
                sms_code=code,
                sms_code_expiry=expiry,
                sms_verified=False,
            )
            try:
                async with db_session.begin_nested():
                    db_session.add(user)
            except IntegrityError:
                # Lost a race with a concurrent registration for this phone.
                user = await self._find_by_phone(db_session, phone_number)
                if user is None or user.sms_verified:
                    raise AlreadyRegistered()
                self._refresh_pending(user, name, gender, address, code, expiry)
        else:
            self._refresh_pending(user, name, gender, address, code, expiry)

        await db_session.commit()

        result = await self.notifier.send_code(phone_number, code)
        if not result.success:
            log.error("registration_delivery_failed", error=result.error)
            if self.settings.strict_delivery:
                await db_session.execute(
                    delete(User).where(User.id == user.id, User.sms_verified.is_(False))
                )
                await db_session.commit()
                raise DeliveryFailed(unconfigured=result.unconfigured)
            log.info("registration_delivery_failure_ignored")

        log.info("registration_code_issued", user_id=str(user.id))
        return PendingVerification(
            user_id=user.id, phone_number=user.phone_number, is_new_user=True
        )

    async def request_login_code(
        self, db_session: AsyncSession, phone_number: str
    ) -> PendingVerification:
        """Send a fresh code to an already verified identity."""
        log = logger.bind(phone_number=phone_number)
        log.info("login_code_requested")

        user = await self._find_by_phone(db_session, phone_number)
        if user is None:
            log.warning("login_not_registered")
            raise NotRegistered()
        if not user.sms_verified:
            log.warning("login_not_verified", user_id=str(user.id))
            raise NotVerified(user_id=str(user.id))

        user.sms_code = generate_code()
        user.sms_code_expiry = utcnow() + self.code_ttl
        await db_session.commit()

        result = await self.notifier.send_code(phone_number, user.sms_code)
        if not result.success:
            log.error("login_delivery_failed", error=result.error)
            if self.settings.strict_delivery:
                user.sms_code = None
                user.sms_code_expiry = None
                await db_session.commit()
                raise DeliveryFailed(unconfigured=result.unconfigured)
            log.info("login_delivery_failure_ignored")

        log.info("login_code_issued", user_id=str(user.id))
        return PendingVerification(
            user_id=user.id, phone_number=user.phone_number, is_new_user=False
        )

    # ── Code submission ───────────────────────────────────────────────────

    async def submit_registration_code(
        self, db_session: AsyncSession, user_id: uuid.UUID, code: str
    ) -> VerifiedSession:
        """Complete registration; fails if the identity is already verified."""
        user = await db_session.get(User, user_id)
        if user is None:
            raise NotFoundError("user_not_found", user_id=str(user_id))
        if user.sms_verified:
            raise AlreadyVerified(user_id=str(user_id))

        await self._consume_code(db_session, user, code, require_verified=False)
        logger.info("registration_verified", user_id=str(user_id))
        return VerifiedSession(user=user, tokens=self.issue_tokens(user.id))

    async def submit_login_code(
        self, db_session: AsyncSession, user_id: uuid.UUID, code: str
    ) -> VerifiedSession:
        """Complete a login for a verified identity."""
        user = await db_session.get(User, user_id)
        if user is None or not user.sms_verified:
            raise NotFoundError("user_not_found", user_id=str(user_id))

        await self._consume_code(db_session, user, code, require_verified=True)
        logger.info("login_verified", user_id=str(user_id))
        return VerifiedSession(user=user, tokens=self.issue_tokens(user.id))

    async def _consume_code(
        self,
        db_session: AsyncSession,
        user: User,
        code: str,
        require_verified: bool,
    ) -> None:
        stored = user.sms_code
        if not stored or not code or not hmac.compare_digest(stored, code):
            raise InvalidCode(user_id=str(user.id))

        now = utcnow()
        expiry = ensure_utc(user.sms_code_expiry)
        if expiry is None or now > expiry:
            raise CodeExpired(user_id=str(user.id))

        stmt = (
            update(User)
            .where(
                User.id == user.id,
                User.sms_code == code,
                User.sms_code_expiry >= now,
                User.sms_verified.is_(require_verified),
            )
            .values(
                sms_code=None,
                sms_code_expiry=None,
                sms_verified=True,
                last_seen=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)
        if result.rowcount != 1:
            # Another submission consumed the code first.
            raise InvalidCode(user_id=str(user.id))

        await db_session.commit()
        await db_session.refresh(user)

    # ── Tokens ────────────────────────────────────────────────────────────

    def issue_tokens(self, user_id: uuid.UUID) -> TokenPair:
        access_ttl = int(timedelta(days=self.settings.ACCESS_TOKEN_TTL_DAYS).total_seconds())
        refresh_ttl = int(timedelta(days=self.settings.REFRESH_TOKEN_TTL_DAYS).total_seconds())
        return TokenPair(
            access_token=seal_token(str(user_id), ACCESS, access_ttl),
            refresh_token=seal_token(str(user_id), REFRESH, refresh_ttl),
        )

    async def refresh(self, db_session: AsyncSession, refresh_token: str) -> VerifiedSession:
        """Rotate a token pair from a valid refresh token."""
        try:
            payload = open_token(refresh_token, REFRESH)
            user_id = uuid.UUID(payload["sub"])
        except (TokenError, ValueError) as exc:
            logger.warning("refresh_rejected", reason=str(exc))
            raise InvalidRefreshToken() from exc

        user = await db_session.get(User, user_id)
        if user is None or not user.sms_verified:
            raise InvalidRefreshToken(user_id=str(user_id))

        return VerifiedSession(user=user, tokens=self.issue_tokens(user.id))

    async def authenticate(self, db_session: AsyncSession, access_token: str | None) -> User:
        """Resolve an access token to a verified user."""
        if not access_token:
            raise AuthenticationError("missing_token")
        try:
            payload = open_token(access_token, ACCESS)
            user_id = uuid.UUID(payload["sub"])
        except (TokenError, ValueError) as exc:
            raise AuthenticationError("invalid_token") from exc

        user = await db_session.get(User, user_id)
        if user is None:
            raise AuthenticationError("invalid_token")
        if not user.sms_verified:
            raise AuthenticationError("not_verified")
        return user

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    async def _find_by_phone(db_session: AsyncSession, phone_number: str) -> User | None:
        result = await db_session.execute(
            select(User).where(User.phone_number == phone_number)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _refresh_pending(user: User, name, gender, address, code, expiry) -> None:
        user.name = name
        user.gender = gender
        user.address = address
        user.sms_code = code
        user.sms_code_expiry = expiry
