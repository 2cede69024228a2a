"""
Rendezvous — User model.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Uuid, false, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.clock import utcnow

GENDERS = ("male", "female", "other")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_lat_lng", "latitude", "longitude"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    phone_number: Mapped[str] = mapped_column(
        String(32), unique=True, index=True, nullable=False
    )
    gender: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="male / female / other"
    )
    address: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # (0, 0) is the "never located" sentinel
    latitude: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, server_default="0"
    )
    longitude: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, server_default="0"
    )

    profile_photo: Mapped[str] = mapped_column(String, nullable=False, default="")
    bio: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    is_online: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    match_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    actual_meet_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    # ── Verification (never serialised to clients) ────────────────
    sms_verified: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    sms_code: Mapped[str | None] = mapped_column(String(6), nullable=True)
    sms_code_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    socket_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )

    @property
    def has_location(self) -> bool:
        return not (self.latitude == 0.0 and self.longitude == 0.0)

    @property
    def location(self) -> dict[str, float] | None:
        """``{"lat", "lng"}``, or ``None`` while at the unset sentinel."""
        if not self.has_location:
            return None
        return {"lat": self.latitude, "lng": self.longitude}

    def __repr__(self) -> str:
        return f"<User {self.name!r} id={self.id}>"
