"""Unit tests for MatchCoordinator — handshake, meetings and history."""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from app.errors import (
    AlreadyResolved,
    DuplicatePending,
    Forbidden,
    LocationUnset,
    MatchExpired,
    NotFoundError,
    SelfMatch,
    TargetUnavailable,
    ValidationError,
)
from app.models.match import Match, Meeting
from app.services.matching_service import MatchCoordinator
from app.utils.clock import ensure_utc, utcnow
from tests.conftest import SHINJUKU, TOKYO, FakeHandle


@pytest.fixture
def coordinator(presence, settings):
    return MatchCoordinator(presence, settings)


@pytest.fixture
def pair(make_user, presence):
    """Two online users in Tokyo with live fake connections."""

    async def _pair():
        a = await make_user("Aiko", location=TOKYO)
        b = await make_user("Ben", location=SHINJUKU, gender="male")
        handle_a, handle_b = FakeHandle(a.id), FakeHandle(b.id)
        await presence.mark_online(a.id, handle_a)
        await presence.mark_online(b.id, handle_b)
        return a, b, handle_a, handle_b

    return _pair


async def _count_matches(session):
    return await session.scalar(select(func.count()).select_from(Match))


class TestRequestMatch:
    """Creating pending matches."""

    @pytest.mark.asyncio
    async def test_creates_pending_match_at_midpoint(self, coordinator, session, pair):
        a, b, _, handle_b = await pair()

        match = await coordinator.request_match(session, a, b.id, "coffee?")

        assert match.status == "pending"
        assert abs(match.meeting_latitude - 35.685) < 1e-3
        assert abs(match.meeting_longitude - 139.677) < 1e-3
        expected_expiry = utcnow() + timedelta(hours=24)
        assert abs((ensure_utc(match.expires_at) - expected_expiry).total_seconds()) < 60

        [event] = handle_b.named("newMatchRequest")
        assert event["matchId"] == str(match.id)
        assert event["requester"]["name"] == "Aiko"
        assert event["meetingReason"] == "coffee?"
        assert set(event["meetingPoint"]) == {"lat", "lng", "address", "placeName"}

    @pytest.mark.asyncio
    async def test_duplicate_pending_in_either_direction(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        await coordinator.request_match(session, a, b.id, "coffee?")

        with pytest.raises(DuplicatePending):
            await coordinator.request_match(session, a, b.id, "coffee again?")
        with pytest.raises(DuplicatePending):
            await coordinator.request_match(session, b, a.id, "tea instead?")
        assert await _count_matches(session) == 1

    @pytest.mark.asyncio
    async def test_unique_index_blocks_second_pending_row(self, session, pair):
        a, b, _, _ = await pair()
        low, high = Match.pair_key(a.id, b.id)
        now = utcnow()

        def _row():
            return Match(
                requester_id=a.id, target_id=b.id, pair_low_id=low, pair_high_id=high,
                meeting_reason="lunch?", meeting_latitude=1.0, meeting_longitude=1.0,
                expires_at=now + timedelta(hours=1),
            )

        session.add(_row())
        await session.commit()

        session.add(_row())
        with pytest.raises(IntegrityError):
            await session.commit()
        await session.rollback()

    @pytest.mark.asyncio
    async def test_new_request_allowed_after_expiry(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        first = await coordinator.request_match(session, a, b.id, "coffee?")
        await session.execute(
            update(Match)
            .where(Match.id == first.id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )
        await session.commit()

        second = await coordinator.request_match(session, a, b.id, "coffee now?")

        await session.refresh(first)
        assert first.status == "expired"
        assert second.status == "pending"

    @pytest.mark.asyncio
    async def test_rejects_self_match(self, coordinator, session, pair):
        a, _, _, _ = await pair()
        with pytest.raises(SelfMatch):
            await coordinator.request_match(session, a, a.id, "myself?")

    @pytest.mark.asyncio
    async def test_rejects_short_reason(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        with pytest.raises(ValidationError) as exc_info:
            await coordinator.request_match(session, a, b.id, "hi")
        assert exc_info.value.kind == "invalid_reason"

    @pytest.mark.asyncio
    async def test_offline_target_unavailable(self, coordinator, session, make_user):
        a = await make_user("Aiko", location=TOKYO)
        b = await make_user("Ben", location=SHINJUKU, is_online=False)
        with pytest.raises(TargetUnavailable):
            await coordinator.request_match(session, a, b.id, "coffee?")

    @pytest.mark.asyncio
    async def test_unlocated_party(self, coordinator, session, make_user):
        a = await make_user("Aiko", location=(0.0, 0.0))
        b = await make_user("Ben", location=SHINJUKU)
        with pytest.raises(LocationUnset):
            await coordinator.request_match(session, a, b.id, "coffee?")


class TestRespond:
    """Accepting, rejecting and expiring matches."""

    @pytest.mark.asyncio
    async def test_accept_creates_meeting_and_counts(self, coordinator, session, pair):
        a, b, handle_a, handle_b = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")

        outcome = await coordinator.respond_to_match(session, b, match.id, "accepted")

        assert outcome.match.status == "accepted"
        assert outcome.meeting is not None
        scheduled = ensure_utc(outcome.meeting.scheduled_time)
        assert abs((scheduled - (utcnow() + timedelta(minutes=30))).total_seconds()) < 60
        assert a.match_count == 1
        assert b.match_count == 1

        [accepted] = handle_a.named("matchAccepted")
        assert accepted["meetingId"] == str(outcome.meeting.id)
        assert accepted["targetUser"]["id"] == str(b.id)
        [confirmed] = handle_b.named("matchConfirmed")
        assert confirmed["requester"]["id"] == str(a.id)

    @pytest.mark.asyncio
    async def test_reject(self, coordinator, session, pair):
        a, b, handle_a, _ = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")

        outcome = await coordinator.respond_to_match(session, b, match.id, "rejected")

        assert outcome.match.status == "rejected"
        assert outcome.meeting is None
        assert a.match_count == 0
        assert handle_a.named("matchRejected") == [
            {"matchId": str(match.id), "targetUserId": str(b.id)}
        ]

    @pytest.mark.asyncio
    async def test_second_response_conflicts(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")
        await coordinator.respond_to_match(session, b, match.id, "accepted")

        with pytest.raises(AlreadyResolved):
            await coordinator.respond_to_match(session, b, match.id, "rejected")
        meetings = await session.scalar(select(func.count()).select_from(Meeting))
        assert meetings == 1

    @pytest.mark.asyncio
    async def test_only_target_may_respond(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")
        with pytest.raises(Forbidden):
            await coordinator.respond_to_match(session, a, match.id, "accepted")

    @pytest.mark.asyncio
    async def test_expired_match(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")
        await session.execute(
            update(Match)
            .where(Match.id == match.id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

        with pytest.raises(MatchExpired):
            await coordinator.respond_to_match(session, b, match.id, "accepted")
        await session.refresh(match)
        assert match.status == "expired"

    @pytest.mark.asyncio
    async def test_unknown_decision(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")
        with pytest.raises(ValidationError):
            await coordinator.respond_to_match(session, b, match.id, "maybe")

    @pytest.mark.asyncio
    async def test_unknown_match(self, coordinator, session, pair):
        _, b, _, _ = await pair()
        with pytest.raises(NotFoundError):
            await coordinator.respond_to_match(session, b, uuid.uuid4(), "accepted")


class TestMeetings:
    """Two-sided confirmation and ratings."""

    async def _accepted(self, coordinator, session, pair):
        a, b, handle_a, handle_b = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")
        outcome = await coordinator.respond_to_match(session, b, match.id, "accepted")
        return a, b, handle_a, handle_b, outcome.meeting

    @pytest.mark.asyncio
    async def test_both_confirmed_on_second_confirmation(self, coordinator, session, pair):
        a, b, handle_a, handle_b, meeting = await self._accepted(coordinator, session, pair)

        first = await coordinator.confirm_meeting(session, a, meeting.id)
        assert first.requester_confirmed is True
        assert first.both_confirmed is False
        assert first.actual_meeting_time is None
        assert handle_b.named("meetingConfirmed")[-1]["bothConfirmed"] is False

        second = await coordinator.confirm_meeting(session, b, meeting.id)
        assert second.both_confirmed is True
        assert second.meeting_success is True
        assert second.actual_meeting_time is not None
        assert a.actual_meet_count == 1
        assert b.actual_meet_count == 1
        assert handle_a.named("meetingConfirmed")[-1]["bothConfirmed"] is True

    @pytest.mark.asyncio
    async def test_repeat_confirmation_counts_once(self, coordinator, session, pair):
        a, b, _, _, meeting = await self._accepted(coordinator, session, pair)
        await coordinator.confirm_meeting(session, a, meeting.id)
        await coordinator.confirm_meeting(session, b, meeting.id)
        stamped = meeting.actual_meeting_time

        await coordinator.confirm_meeting(session, b, meeting.id)
        await coordinator.confirm_meeting(session, a, meeting.id)

        assert a.actual_meet_count == 1
        assert b.actual_meet_count == 1
        assert meeting.actual_meeting_time == stamped

    @pytest.mark.asyncio
    async def test_outsider_cannot_confirm(self, coordinator, session, pair, make_user):
        _, _, _, _, meeting = await self._accepted(coordinator, session, pair)
        outsider = await make_user("Chika", location=TOKYO)
        with pytest.raises(Forbidden):
            await coordinator.confirm_meeting(session, outsider, meeting.id)

    @pytest.mark.asyncio
    async def test_rating_per_side(self, coordinator, session, pair):
        a, b, _, _, meeting = await self._accepted(coordinator, session, pair)

        await coordinator.rate_meeting(session, a, meeting.id, rating=5, notes="lovely")
        rated = await coordinator.rate_meeting(session, b, meeting.id, rating=3)

        assert rated.requester_rating == 5
        assert rated.target_rating == 3
        assert rated.notes == "lovely"

    @pytest.mark.asyncio
    async def test_rating_out_of_range(self, coordinator, session, pair):
        a, _, _, _, meeting = await self._accepted(coordinator, session, pair)
        with pytest.raises(ValidationError) as exc_info:
            await coordinator.rate_meeting(session, a, meeting.id, rating=6)
        assert exc_info.value.kind == "invalid_rating"


class TestHistory:
    """Paginated history with lazy expiry."""

    @pytest.mark.asyncio
    async def test_history_pages_and_filters(self, coordinator, session, pair, make_user, presence):
        a, b, _, _ = await pair()
        c = await make_user("Chika", location=(35.70, 139.70))
        await presence.mark_online(c.id, FakeHandle(c.id))

        first = await coordinator.request_match(session, a, b.id, "coffee?")
        await coordinator.respond_to_match(session, b, first.id, "accepted")
        await coordinator.request_match(session, c, a.id, "ramen later?")

        page = await coordinator.get_history(session, a, page=1, page_size=1)
        assert page.total == 2
        assert page.total_pages == 2
        assert len(page.matches) == 1

        accepted = await coordinator.get_history(session, a, status="accepted")
        assert [e.match.id for e in accepted.matches] == [first.id]
        assert accepted.matches[0].meeting is not None

    @pytest.mark.asyncio
    async def test_history_expires_stale_pending(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")
        await session.execute(
            update(Match)
            .where(Match.id == match.id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

        history = await coordinator.get_history(session, b)

        assert history.matches[0].match.status == "expired"

    @pytest.mark.asyncio
    async def test_sweeper_expires_everything_stale(self, coordinator, session, pair):
        a, b, _, _ = await pair()
        match = await coordinator.request_match(session, a, b.id, "coffee?")
        await session.execute(
            update(Match)
            .where(Match.id == match.id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

        assert await coordinator.expire_stale_matches(session) == 1
        assert await coordinator.expire_stale_matches(session) == 0
