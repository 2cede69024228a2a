"""
Rendezvous — Match and Meeting models.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    false,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.utils.clock import utcnow

MATCH_STATUSES = ("pending", "accepted", "rejected", "expired")

_PENDING_ONLY = text("status = 'pending'")


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        # At most one pending request per unordered pair, in either direction.
        Index(
            "uq_match_pending_pair",
            "pair_low_id",
            "pair_high_id",
            unique=True,
            postgresql_where=_PENDING_ONLY,
            sqlite_where=_PENDING_ONLY,
        ),
        Index("ix_match_requester_target", "requester_id", "target_id"),
        Index("ix_match_expires_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    target_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    pair_low_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    pair_high_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending",
        comment="pending / accepted / rejected / expired",
    )
    meeting_reason: Mapped[str] = mapped_column(String(200), nullable=False)

    meeting_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    meeting_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    meeting_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meeting_place_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    requester: Mapped["User"] = relationship(
        "User", foreign_keys=[requester_id], lazy="selectin"
    )
    target: Mapped["User"] = relationship(
        "User", foreign_keys=[target_id], lazy="selectin"
    )

    @property
    def meeting_point(self) -> dict:
        return {
            "lat": self.meeting_latitude,
            "lng": self.meeting_longitude,
            "address": self.meeting_address,
            "place_name": self.meeting_place_name,
        }

    @staticmethod
    def pair_key(a: uuid.UUID, b: uuid.UUID) -> tuple[uuid.UUID, uuid.UUID]:
        """Order a pair of user ids so (a, b) and (b, a) share one key."""
        return (a, b) if str(a) <= str(b) else (b, a)

    def __repr__(self) -> str:
        return (
            f"<Match {self.requester_id} -> {self.target_id} "
            f"status={self.status!r}>"
        )


class Meeting(Base):
    __tablename__ = "meetings"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("matches.id", ondelete="CASCADE"),
        unique=True, index=True, nullable=False,
    )
    scheduled_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    actual_meeting_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    requester_confirmed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    target_confirmed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    both_confirmed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    meeting_success: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    requester_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    target_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    match: Mapped["Match"] = relationship("Match", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<Meeting match={self.match_id} "
            f"confirmed={self.requester_confirmed}/{self.target_confirmed}>"
        )
