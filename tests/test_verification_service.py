"""Unit tests for VerificationGate — code issuance, submission and tokens."""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select, update

from app.errors import (
    AlreadyRegistered,
    AlreadyVerified,
    AuthenticationError,
    CodeExpired,
    DeliveryFailed,
    InvalidCode,
    InvalidRefreshToken,
    NotRegistered,
    NotVerified,
)
from app.models.user import User
from app.services.notifier_service import DeliveryResult
from app.services.verification_service import VerificationGate, generate_code
from app.utils.clock import utcnow

PHONE = "+15550001"


@pytest.fixture
def gate(notifier, settings):
    return VerificationGate(notifier, settings)


def _strict_settings(settings):
    return settings.model_copy(update={"ENVIRONMENT": "production"})


def _failing_notifier(unconfigured=False):
    failing = MagicMock()
    failing.send_code = AsyncMock(
        return_value=DeliveryResult(success=False, error="boom", unconfigured=unconfigured)
    )
    return failing


async def _register(gate, session, phone=PHONE):
    return await gate.request_registration_code(
        session, name="Aiko", phone_number=phone, gender="female", address="Tokyo"
    )


class TestCodeGeneration:

    def test_six_digits_in_range(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6
            assert 100000 <= int(code) <= 999999


class TestRegistration:
    """Register → submit code → verified session."""

    @pytest.mark.asyncio
    async def test_happy_path(self, gate, notifier, session):
        pending = await _register(gate, session)
        assert pending.is_new_user is True
        assert pending.requires_verification is True

        code = notifier.last_code_for(PHONE)
        verified = await gate.submit_registration_code(session, pending.user_id, code)

        assert verified.user.sms_verified is True
        assert verified.user.sms_code is None
        assert verified.tokens.access_token != verified.tokens.refresh_token

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, gate, notifier, session):
        pending = await _register(gate, session)
        code = notifier.last_code_for(PHONE)
        await gate.submit_registration_code(session, pending.user_id, code)

        with pytest.raises(AlreadyVerified):
            await gate.submit_registration_code(session, pending.user_id, code)

    @pytest.mark.asyncio
    async def test_wrong_code(self, gate, notifier, session):
        pending = await _register(gate, session)
        code = notifier.last_code_for(PHONE)
        wrong = "100000" if code != "100000" else "100001"

        with pytest.raises(InvalidCode):
            await gate.submit_registration_code(session, pending.user_id, wrong)

    @pytest.mark.asyncio
    async def test_expired_code(self, gate, notifier, session):
        pending = await _register(gate, session)
        code = notifier.last_code_for(PHONE)
        await session.execute(
            update(User)
            .where(User.id == pending.user_id)
            .values(sms_code_expiry=utcnow() - timedelta(seconds=1))
        )
        await session.commit()
        session.expire_all()

        with pytest.raises(CodeExpired):
            await gate.submit_registration_code(session, pending.user_id, code)

    @pytest.mark.asyncio
    async def test_reissue_overwrites_previous_code(self, gate, notifier, session):
        first = await _register(gate, session)
        old_code = notifier.last_code_for(PHONE)
        second = await _register(gate, session)
        new_code = notifier.last_code_for(PHONE)

        assert first.user_id == second.user_id
        rows = (await session.execute(select(User).where(User.phone_number == PHONE))).scalars().all()
        assert len(rows) == 1
        if old_code != new_code:
            with pytest.raises(InvalidCode):
                await gate.submit_registration_code(session, first.user_id, old_code)
        await gate.submit_registration_code(session, first.user_id, new_code)

    @pytest.mark.asyncio
    async def test_verified_phone_cannot_register_again(self, gate, notifier, session):
        pending = await _register(gate, session)
        await gate.submit_registration_code(session, pending.user_id, notifier.last_code_for(PHONE))

        with pytest.raises(AlreadyRegistered):
            await _register(gate, session)

    @pytest.mark.asyncio
    async def test_strict_delivery_failure_rolls_back(self, settings, session):
        gate = VerificationGate(_failing_notifier(), _strict_settings(settings))

        with pytest.raises(DeliveryFailed) as exc_info:
            await _register(gate, session)

        assert exc_info.value.kind == "delivery_failed"
        rows = (await session.execute(select(User).where(User.phone_number == PHONE))).scalars().all()
        assert rows == []

    @pytest.mark.asyncio
    async def test_strict_unconfigured_is_503(self, settings, session):
        gate = VerificationGate(_failing_notifier(unconfigured=True), _strict_settings(settings))

        with pytest.raises(DeliveryFailed) as exc_info:
            await _register(gate, session)
        assert exc_info.value.status_code == 503
        assert exc_info.value.kind == "delivery_unavailable"

    @pytest.mark.asyncio
    async def test_permissive_delivery_failure_keeps_code(self, settings, session):
        gate = VerificationGate(_failing_notifier(), settings)

        pending = await _register(gate, session)
        user = await session.get(User, pending.user_id)
        assert user.sms_code is not None


class TestLogin:
    """Login codes for already verified identities."""

    @pytest.mark.asyncio
    async def test_login_flow(self, gate, notifier, session):
        pending = await _register(gate, session)
        await gate.submit_registration_code(session, pending.user_id, notifier.last_code_for(PHONE))

        login = await gate.request_login_code(session, PHONE)
        assert login.is_new_user is False
        verified = await gate.submit_login_code(session, login.user_id, notifier.last_code_for(PHONE))
        assert verified.user.id == pending.user_id

    @pytest.mark.asyncio
    async def test_unknown_phone(self, gate, session):
        with pytest.raises(NotRegistered):
            await gate.request_login_code(session, "+15559999")

    @pytest.mark.asyncio
    async def test_unverified_phone(self, gate, session):
        await _register(gate, session)
        with pytest.raises(NotVerified):
            await gate.request_login_code(session, PHONE)


class TestTokens:
    """Token issuance, rotation and authentication."""

    async def _verified(self, gate, notifier, session):
        pending = await _register(gate, session)
        return await gate.submit_registration_code(
            session, pending.user_id, notifier.last_code_for(PHONE)
        )

    @pytest.mark.asyncio
    async def test_authenticate_access_token(self, gate, notifier, session):
        verified = await self._verified(gate, notifier, session)
        user = await gate.authenticate(session, verified.tokens.access_token)
        assert user.id == verified.user.id

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self, gate, notifier, session):
        verified = await self._verified(gate, notifier, session)
        with pytest.raises(AuthenticationError) as exc_info:
            await gate.authenticate(session, verified.tokens.refresh_token)
        assert exc_info.value.kind == "invalid_token"

    @pytest.mark.asyncio
    async def test_missing_and_garbage_tokens(self, gate, session):
        with pytest.raises(AuthenticationError) as missing:
            await gate.authenticate(session, None)
        assert missing.value.kind == "missing_token"

        with pytest.raises(AuthenticationError) as garbage:
            await gate.authenticate(session, "not-a-token")
        assert garbage.value.kind == "invalid_token"

    @pytest.mark.asyncio
    async def test_refresh_rotates_pair(self, gate, notifier, session):
        verified = await self._verified(gate, notifier, session)
        rotated = await gate.refresh(session, verified.tokens.refresh_token)

        assert rotated.user.id == verified.user.id
        assert (await gate.authenticate(session, rotated.tokens.access_token)).id == verified.user.id

    @pytest.mark.asyncio
    async def test_refresh_rejects_access_token(self, gate, notifier, session):
        verified = await self._verified(gate, notifier, session)
        with pytest.raises(InvalidRefreshToken):
            await gate.refresh(session, verified.tokens.access_token)

    @pytest.mark.asyncio
    async def test_unverified_user_token_rejected(self, gate, session):
        pending = await _register(gate, session)
        token = gate.issue_tokens(pending.user_id).access_token

        with pytest.raises(AuthenticationError) as exc_info:
            await gate.authenticate(session, token)
        assert exc_info.value.kind == "not_verified"
