"""Initial schema — users, matches and meetings.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("gender", sa.String(16), nullable=False, comment="male / female / other"),
        sa.Column("address", sa.String(255), nullable=False, server_default=""),
        sa.Column("latitude", sa.Float, nullable=False, server_default="0"),
        sa.Column("longitude", sa.Float, nullable=False, server_default="0"),
        sa.Column("profile_photo", sa.String, nullable=False, server_default=""),
        sa.Column("bio", sa.String(500), nullable=False, server_default=""),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "last_seen",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("match_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("actual_meet_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sms_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("sms_code", sa.String(6), nullable=True),
        sa.Column("sms_code_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("socket_id", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_phone_number", "users", ["phone_number"], unique=True)
    op.create_index("ix_users_lat_lng", "users", ["latitude", "longitude"])

    # ── 2. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "requester_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "target_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pair_low_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("pair_high_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            server_default="pending",
            comment="pending / accepted / rejected / expired",
        ),
        sa.Column("meeting_reason", sa.String(200), nullable=False),
        sa.Column("meeting_latitude", sa.Float, nullable=False),
        sa.Column("meeting_longitude", sa.Float, nullable=False),
        sa.Column("meeting_address", sa.String(255), nullable=True),
        sa.Column("meeting_place_name", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
    )
    # At most one pending request per unordered pair.
    op.create_index(
        "uq_match_pending_pair",
        "matches",
        ["pair_low_id", "pair_high_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "ix_match_requester_target", "matches", ["requester_id", "target_id"]
    )
    op.create_index("ix_match_expires_at", "matches", ["expires_at"])

    # ── 3. meetings ─────────────────────────────────────────────────
    op.create_table(
        "meetings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "match_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("matches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actual_meeting_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requester_confirmed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("target_confirmed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("both_confirmed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("meeting_success", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("requester_rating", sa.Integer, nullable=True),
        sa.Column("target_rating", sa.Integer, nullable=True),
        sa.Column("notes", sa.String(1000), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_meetings_match_id", "meetings", ["match_id"], unique=True)


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_index("ix_meetings_match_id", table_name="meetings")
    op.drop_table("meetings")

    op.drop_index("ix_match_expires_at", table_name="matches")
    op.drop_index("ix_match_requester_target", table_name="matches")
    op.drop_index("uq_match_pending_pair", table_name="matches")
    op.drop_table("matches")

    op.drop_index("ix_users_lat_lng", table_name="users")
    op.drop_index("ix_users_phone_number", table_name="users")
    op.drop_table("users")
