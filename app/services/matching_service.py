"""
Rendezvous — Match handshake & meeting confirmation.

State machines::

    Match:    pending --accept--> accepted   (terminal, spawns a Meeting)
              pending --reject--> rejected   (terminal)
              pending --(now > expires_at)--> expired (terminal, no event)

    Meeting:  unconfirmed --either side--> partially confirmed
              partially confirmed --other side--> both confirmed

Every cross-session invariant is enforced in the store rather than by
read-then-write in Python:

  - at most one pending match per unordered pair → partial unique index
  - pending → accepted/rejected fires once → ``UPDATE ... WHERE status='pending'``
  - the meeting success stamp fires once → ``UPDATE ... WHERE actual_meeting_time IS NULL``

Expiry is lazy: stale pending matches are expired whenever the pair or the
user's history is touched.  ``expire_stale_matches`` exists for an optional
background sweeper but nothing depends on it running.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
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
from app.models.user import User
from app.services.geo_service import great_circle_midpoint
from app.services.presence_service import PresenceRegistry
from app.utils.clock import ensure_utc, utcnow

logger = structlog.get_logger("rendezvous.matching_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

ACCEPTED = "accepted"
REJECTED = "rejected"
DECISIONS = (ACCEPTED, REJECTED)

REASON_MIN_LENGTH = 5
REASON_MAX_LENGTH = 200
RATING_RANGE = (1, 5)


@dataclass(frozen=True)
class RespondOutcome:
    match: Match
    meeting: Meeting | None = None


@dataclass(frozen=True)
class HistoryEntry:
    match: Match
    meeting: Meeting | None = None


@dataclass(frozen=True)
class HistoryPage:
    matches: list[HistoryEntry] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


# ──────────────────────────────────────────────────────────────────────────────
# Event payload helpers
# ──────────────────────────────────────────────────────────────────────────────

def public_summary(user: User) -> dict[str, Any]:
    return {
        "id": str(user.id),
        "name": user.name,
        "profilePhoto": user.profile_photo,
        "bio": user.bio,
    }


def meeting_point(match: Match) -> dict[str, Any]:
    point = match.meeting_point
    return {
        "lat": point["lat"],
        "lng": point["lng"],
        "address": point["address"],
        "placeName": point["place_name"],
    }


def _iso(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value is not None else None


class MatchCoordinator:
    """Owns the Match/Meeting lifecycle and the events it emits.

    Parameters
    ----------
    presence:
        Registry used to reach the counterpart's live connection.  ``None``
        disables event delivery (scripts, some tests).
    settings:
        Lifecycle timings; defaults to the process settings.
    """

    def __init__(
        self,
        presence: PresenceRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.presence = presence
        self.settings = settings or get_settings()
        self.match_ttl = timedelta(hours=self.settings.MATCH_TTL_HOURS)
        self.meeting_delay = timedelta(minutes=self.settings.MEETING_DELAY_MINUTES)

    # ── Request ───────────────────────────────────────────────────────────

    async def request_match(
        self,
        db_session: AsyncSession,
        requester: User,
        target_id: uuid.UUID,
        reason: str,
        meeting_address: str | None = None,
        meeting_place_name: str | None = None,
    ) -> Match:
        """Create a pending match from ``requester`` to ``target_id``."""
        log = logger.bind(requester_id=str(requester.id), target_id=str(target_id))
        log.info("match_request_started")

        reason = (reason or "").strip()
        if not REASON_MIN_LENGTH <= len(reason) <= REASON_MAX_LENGTH:
            raise ValidationError("invalid_reason", length=len(reason))

        if target_id == requester.id:
            raise SelfMatch(user_id=str(requester.id))

        target = await db_session.get(User, target_id)
        if target is None or not target.sms_verified or not target.is_online:
            log.info("match_target_unavailable")
            raise TargetUnavailable(target_id=str(target_id))

        if not requester.has_location or not target.has_location:
            raise LocationUnset(
                requester_id=str(requester.id), target_id=str(target_id)
            )

        low, high = Match.pair_key(requester.id, target.id)
        now = utcnow()
        await self._expire_pair(db_session, low, high, now)

        existing = await db_session.execute(
            select(Match.id).where(
                Match.pair_low_id == low,
                Match.pair_high_id == high,
                Match.status == "pending",
            )
        )
        if existing.first() is not None:
            log.info("match_duplicate_pending")
            raise DuplicatePending()

        lat, lng = great_circle_midpoint(
            requester.latitude, requester.longitude, target.latitude, target.longitude
        )
        match = Match(
            requester_id=requester.id,
            target_id=target.id,
            pair_low_id=low,
            pair_high_id=high,
            status="pending",
            meeting_reason=reason,
            meeting_latitude=lat,
            meeting_longitude=lng,
            meeting_address=meeting_address,
            meeting_place_name=meeting_place_name,
            created_at=now,
            expires_at=now + self.match_ttl,
        )
        try:
            async with db_session.begin_nested():
                db_session.add(match)
        except IntegrityError as exc:
            # A concurrent request for the same pair committed first.
            log.info("match_duplicate_pending_race")
            raise DuplicatePending() from exc

        await db_session.commit()
        await db_session.refresh(match)
        await db_session.refresh(match, attribute_names=["requester", "target"])
        log.info("match_requested", match_id=str(match.id))

        await self._emit(
            target.id,
            "newMatchRequest",
            {
                "matchId": str(match.id),
                "requester": public_summary(requester),
                "meetingReason": match.meeting_reason,
                "meetingPoint": meeting_point(match),
                "expiresAt": _iso(match.expires_at),
            },
        )
        return match

    # ── Respond ───────────────────────────────────────────────────────────

    async def respond_to_match(
        self,
        db_session: AsyncSession,
        responder: User,
        match_id: uuid.UUID,
        decision: str,
    ) -> RespondOutcome:
        """Accept or reject a pending match addressed to ``responder``."""
        if decision not in DECISIONS:
            raise ValidationError("invalid_decision", decision=decision)

        log = logger.bind(match_id=str(match_id), responder_id=str(responder.id))

        match = await db_session.get(Match, match_id)
        if match is None:
            raise NotFoundError("match_not_found", match_id=str(match_id))
        if match.target_id != responder.id:
            log.warning("match_respond_forbidden")
            raise Forbidden(match_id=str(match_id))
        if match.status != "pending":
            raise AlreadyResolved(match_id=str(match_id), status=match.status)

        now = utcnow()
        if now > ensure_utc(match.expires_at):
            await db_session.execute(
                update(Match)
                .where(Match.id == match.id, Match.status == "pending")
                .values(status="expired")
                .execution_options(synchronize_session=False)
            )
            await db_session.commit()
            await db_session.refresh(match)
            log.info("match_expired_on_respond")
            raise MatchExpired(match_id=str(match_id))

        result = await db_session.execute(
            update(Match)
            .where(Match.id == match.id, Match.status == "pending")
            .values(status=decision, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db_session.rollback()
            log.info("match_respond_lost_race")
            raise AlreadyResolved(match_id=str(match_id))

        meeting: Meeting | None = None
        if decision == ACCEPTED:
            await db_session.execute(
                update(User)
                .where(User.id.in_([match.requester_id, match.target_id]))
                .values(match_count=User.match_count + 1)
                .execution_options(synchronize_session=False)
            )
            meeting = Meeting(match_id=match.id, scheduled_time=now + self.meeting_delay)
            db_session.add(meeting)

        await db_session.commit()
        await db_session.refresh(match)
        if meeting is not None:
            await db_session.refresh(meeting)
        for participant in (match.requester, match.target):
            await db_session.refresh(participant)

        log.info("match_responded", decision=decision)

        if meeting is not None:
            scheduled = _iso(meeting.scheduled_time)
            await self._emit(
                match.requester_id,
                "matchAccepted",
                {
                    "matchId": str(match.id),
                    "targetUser": public_summary(match.target),
                    "meetingPoint": meeting_point(match),
                    "meetingId": str(meeting.id),
                    "scheduledTime": scheduled,
                },
            )
            await self._emit(
                match.target_id,
                "matchConfirmed",
                {
                    "matchId": str(match.id),
                    "requester": public_summary(match.requester),
                    "meetingPoint": meeting_point(match),
                    "meetingId": str(meeting.id),
                    "scheduledTime": scheduled,
                },
            )
        else:
            await self._emit(
                match.requester_id,
                "matchRejected",
                {"matchId": str(match.id), "targetUserId": str(match.target_id)},
            )

        return RespondOutcome(match=match, meeting=meeting)

    # ── Meetings ──────────────────────────────────────────────────────────

    async def confirm_meeting(
        self, db_session: AsyncSession, confirmer: User, meeting_id: uuid.UUID
    ) -> Meeting:
        """Set the confirmer's flag; stamp the meeting once both sides agree."""
        log = logger.bind(meeting_id=str(meeting_id), confirmer_id=str(confirmer.id))

        meeting = await self._participant_meeting(db_session, confirmer, meeting_id)
        match = meeting.match
        is_requester = match.requester_id == confirmer.id

        # Only the confirmer's own column is written; the other flag is read
        # inside the same statement.
        if is_requester:
            values = {
                "requester_confirmed": True,
                "both_confirmed": Meeting.target_confirmed,
            }
        else:
            values = {
                "target_confirmed": True,
                "both_confirmed": Meeting.requester_confirmed,
            }
        values["updated_at"] = utcnow()
        await db_session.execute(
            update(Meeting)
            .where(Meeting.id == meeting.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        now = utcnow()
        stamped = await db_session.execute(
            update(Meeting)
            .where(
                Meeting.id == meeting.id,
                Meeting.actual_meeting_time.is_(None),
                Meeting.requester_confirmed.is_(True),
                Meeting.target_confirmed.is_(True),
            )
            .values(actual_meeting_time=now, meeting_success=True, both_confirmed=True)
            .execution_options(synchronize_session=False)
        )
        if stamped.rowcount == 1:
            await db_session.execute(
                update(User)
                .where(User.id.in_([match.requester_id, match.target_id]))
                .values(actual_meet_count=User.actual_meet_count + 1)
                .execution_options(synchronize_session=False)
            )
            log.info("meeting_success_stamped")

        await db_session.commit()
        await db_session.refresh(meeting)
        for participant in (match.requester, match.target):
            await db_session.refresh(participant)

        log.info("meeting_confirmed", both_confirmed=meeting.both_confirmed)

        other_id = match.target_id if is_requester else match.requester_id
        await self._emit(
            other_id,
            "meetingConfirmed",
            {
                "meetingId": str(meeting.id),
                "confirmedBy": confirmer.name,
                "confirmedById": str(confirmer.id),
                "bothConfirmed": meeting.both_confirmed,
            },
        )
        return meeting

    async def rate_meeting(
        self,
        db_session: AsyncSession,
        rater: User,
        meeting_id: uuid.UUID,
        rating: int | None = None,
        notes: str | None = None,
    ) -> Meeting:
        """Record the rater's 1-5 rating and optional notes."""
        low, high = RATING_RANGE
        if rating is not None and not low <= rating <= high:
            raise ValidationError("invalid_rating", rating=rating)
        if notes is not None and len(notes) > 1000:
            raise ValidationError("notes_too_long")

        meeting = await self._participant_meeting(db_session, rater, meeting_id)
        if rating is not None:
            if meeting.match.requester_id == rater.id:
                meeting.requester_rating = rating
            else:
                meeting.target_rating = rating
        if notes is not None:
            meeting.notes = notes

        await db_session.commit()
        await db_session.refresh(meeting)
        logger.info("meeting_rated", meeting_id=str(meeting_id), rater_id=str(rater.id))
        return meeting

    async def _participant_meeting(
        self, db_session: AsyncSession, user: User, meeting_id: uuid.UUID
    ) -> Meeting:
        meeting = await db_session.get(Meeting, meeting_id)
        if meeting is None:
            raise NotFoundError("meeting_not_found", meeting_id=str(meeting_id))
        if user.id not in (meeting.match.requester_id, meeting.match.target_id):
            raise Forbidden(meeting_id=str(meeting_id))
        return meeting

    # ── History ───────────────────────────────────────────────────────────

    async def get_history(
        self,
        db_session: AsyncSession,
        user: User,
        page: int = 1,
        page_size: int = 10,
        status: str | None = None,
    ) -> HistoryPage:
        """Matches where ``user`` is either party, newest first."""
        page = max(1, page)
        page_size = max(1, page_size)

        involves_user = or_(Match.requester_id == user.id, Match.target_id == user.id)

        expired = await db_session.execute(
            update(Match)
            .where(involves_user, Match.status == "pending", Match.expires_at <= utcnow())
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        if expired.rowcount:
            await db_session.commit()

        criteria = [involves_user]
        if status is not None:
            criteria.append(Match.status == status)

        total = await db_session.scalar(
            select(func.count()).select_from(Match).where(and_(*criteria))
        )

        result = await db_session.execute(
            select(Match)
            .where(and_(*criteria))
            .order_by(Match.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        matches = list(result.scalars().all())
        # Rows changed by the lazy expiry above may already be in the identity map.
        for match in matches:
            await db_session.refresh(match, attribute_names=["status"])

        meetings: dict[uuid.UUID, Meeting] = {}
        if matches:
            meeting_rows = await db_session.execute(
                select(Meeting).where(Meeting.match_id.in_([m.id for m in matches]))
            )
            meetings = {m.match_id: m for m in meeting_rows.scalars().all()}

        return HistoryPage(
            matches=[HistoryEntry(match=m, meeting=meetings.get(m.id)) for m in matches],
            total=total or 0,
            page=page,
            page_size=page_size,
        )

    # ── Expiry ────────────────────────────────────────────────────────────

    async def expire_stale_matches(self, db_session: AsyncSession) -> int:
        """Move every pending match past its expiry to ``expired``."""
        result = await db_session.execute(
            update(Match)
            .where(Match.status == "pending", Match.expires_at <= utcnow())
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()
        count = result.rowcount or 0
        if count:
            logger.info("matches_expired", count=count)
        return count

    @staticmethod
    async def _expire_pair(
        db_session: AsyncSession, low: uuid.UUID, high: uuid.UUID, now: datetime
    ) -> None:
        await db_session.execute(
            update(Match)
            .where(
                Match.pair_low_id == low,
                Match.pair_high_id == high,
                Match.status == "pending",
                Match.expires_at <= now,
            )
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )

    async def _emit(self, user_id: uuid.UUID, event: str, data: dict[str, Any]) -> None:
        if self.presence is None:
            return
        await self.presence.emit_to_user(user_id, event, data)
