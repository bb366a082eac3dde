"""Create users, calendars, calendar_events, and calendar_webhooks.

Revision ID: 001_calendar_tables
Revises:
Create Date: 2026-10-19

- users: Calendar owners; email drives organization detection
- calendars: Connected calendars with bot policy settings
- calendar_events: Provider events, projected columns + raw snapshot
- calendar_webhooks: Audit trail of received calendar webhooks
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_calendar_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    # ── users ────────────────────────────────────────────────────────────

    op.create_table(
        "users",
        _id_column(),
        sa.Column("email", sa.String(320), nullable=False),
        _created_at(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    # ── calendars ────────────────────────────────────────────────────────

    op.create_table(
        "calendars",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_calendars_user_id_users"),
            nullable=False,
        ),
        sa.Column("remote_id", sa.String(200), nullable=True),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("status", sa.String(50), server_default=sa.text("'connecting'"), nullable=False),
        sa.Column("bot_name", sa.String(200), nullable=True),
        sa.Column("bot_avatar_url", sa.String(1000), nullable=True),
        sa.Column("record_video", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("record_audio", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("enable_transcription", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("transcription_language", sa.String(20), nullable=True),
        sa.Column("transcription_mode", sa.String(20), server_default=sa.text("'realtime'"), nullable=False),
        sa.Column("auto_record_external_events", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("auto_record_internal_events", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "auto_record_only_confirmed_events",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("join_before_start_minutes", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("leave_after_end_minutes", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("auto_leave_if_alone", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column(
            "auto_leave_alone_timeout_seconds",
            sa.Integer(),
            server_default=sa.text("60"),
            nullable=False,
        ),
        sa.Column("remote_snapshot", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("remote_id", name="uq_calendars_remote_id"),
    )
    op.create_index("ix_calendars_user_id", "calendars", ["user_id"])

    # ── calendar_events ──────────────────────────────────────────────────

    op.create_table(
        "calendar_events",
        _id_column(),
        sa.Column(
            "calendar_id",
            UUID(as_uuid=True),
            sa.ForeignKey(
                "calendars.id",
                ondelete="CASCADE",
                name="fk_calendar_events_calendar_id_calendars",
            ),
            nullable=False,
        ),
        sa.Column("remote_id", sa.String(200), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("meeting_url", sa.String(2000), nullable=True),
        sa.Column("platform", sa.String(50), nullable=True),
        sa.Column("title", sa.String(1000), server_default=sa.text("''"), nullable=False),
        sa.Column("should_record_automatic", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("should_record_manual", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("transcription_mode", sa.String(20), nullable=True),
        sa.Column("remote_snapshot", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("remote_id", name="uq_calendar_events_remote_id"),
    )
    op.create_index("ix_calendar_events_calendar_id", "calendar_events", ["calendar_id"])
    op.create_index("ix_calendar_events_start_time", "calendar_events", ["start_time"])
    op.create_index("ix_calendar_events_updated_at", "calendar_events", ["updated_at"])

    # ── calendar_webhooks ────────────────────────────────────────────────

    op.create_table(
        "calendar_webhooks",
        _id_column(),
        sa.Column(
            "calendar_id",
            UUID(as_uuid=True),
            sa.ForeignKey(
                "calendars.id",
                ondelete="CASCADE",
                name="fk_calendar_webhooks_calendar_id_calendars",
            ),
            nullable=False,
        ),
        sa.Column("event", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_calendar_webhooks_calendar_id", "calendar_webhooks", ["calendar_id"])


def downgrade() -> None:
    op.drop_table("calendar_webhooks")
    op.drop_table("calendar_events")
    op.drop_table("calendars")
    op.drop_table("users")
