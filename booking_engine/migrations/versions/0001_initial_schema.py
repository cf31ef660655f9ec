"""Initial booking engine schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-01 10:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

from booking_engine.migrations.utils import index_exists, is_postgres, table_exists

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    if is_postgres():
        # merge revision ids can be longer than the default varchar(32)
        op.execute(
            "ALTER TABLE IF EXISTS public.alembic_version ALTER COLUMN version_num TYPE varchar(128);"
        )

    if not table_exists("calendars"):
        op.create_table(
            "calendars",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("slug", sa.String(length=255), nullable=False),
            sa.Column("timezone", sa.String(length=100), nullable=False, server_default="America/New_York"),
            sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("buffer_before_minutes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("buffer_after_minutes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("min_notice_hours", sa.Integer(), nullable=False, server_default="24"),
            sa.Column("max_future_days", sa.Integer(), nullable=False, server_default="60"),
            sa.Column("assigned_to", sa.Integer(), nullable=True),
            sa.Column("color", sa.String(length=7), nullable=False, server_default="#3B82F6"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug", name="uq_calendars_slug"),
            sa.CheckConstraint("duration_minutes > 0", name="ck_calendars_duration_positive"),
            sa.CheckConstraint(
                "buffer_before_minutes >= 0 AND buffer_after_minutes >= 0", name="ck_calendars_buffers"
            ),
            sa.CheckConstraint("min_notice_hours >= 0", name="ck_calendars_min_notice"),
            sa.CheckConstraint("max_future_days > 0", name="ck_calendars_max_future"),
        )
        op.create_index("ix_calendars_organization_id", "calendars", ["organization_id"])

    if not table_exists("availability_windows"):
        op.create_table(
            "availability_windows",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("calendar_id", sa.Integer(), nullable=False),
            sa.Column("day_of_week", sa.Integer(), nullable=False),
            sa.Column("start_time", sa.Time(), nullable=False),
            sa.Column("end_time", sa.Time(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["calendar_id"], ["calendars.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_availability_day_of_week"),
        )
        op.create_index("ix_availability_windows_calendar_id", "availability_windows", ["calendar_id"])

    if not table_exists("calendar_date_overrides"):
        op.create_table(
            "calendar_date_overrides",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("calendar_id", sa.Integer(), nullable=False),
            sa.Column("override_date", sa.Date(), nullable=False),
            sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("start_time", sa.Time(), nullable=True),
            sa.Column("end_time", sa.Time(), nullable=True),
            sa.Column("reason", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["calendar_id"], ["calendars.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("calendar_id", "override_date", name="uq_date_overrides_calendar_date"),
        )
        op.create_index("ix_calendar_date_overrides_calendar_id", "calendar_date_overrides", ["calendar_id"])
        op.create_index("ix_calendar_date_overrides_override_date", "calendar_date_overrides", ["override_date"])

    if not table_exists("bookings"):
        op.create_table(
            "bookings",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("calendar_id", sa.Integer(), nullable=False),
            sa.Column("contact_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=True),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("timezone", sa.String(length=100), nullable=False),
            sa.Column("attendee_name", sa.String(length=255), nullable=True),
            sa.Column("attendee_email", sa.String(length=255), nullable=True),
            sa.Column("attendee_phone", sa.String(length=50), nullable=True),
            sa.Column("assigned_to", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("cancellation_token", sa.String(length=64), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("internal_notes", sa.Text(), nullable=True),
            sa.Column("custom_fields", sa.JSON(), nullable=True),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="booking_page"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["calendar_id"], ["calendars.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("cancellation_token"),
            sa.CheckConstraint("end_time > start_time", name="ck_bookings_interval"),
            sa.CheckConstraint("status IN ('pending', 'confirmed', 'cancelled')", name="ck_bookings_status"),
            sa.CheckConstraint("source IN ('manual', 'booking_page')", name="ck_bookings_source"),
        )
        op.create_index("ix_bookings_organization_id", "bookings", ["organization_id"])
        op.create_index("ix_bookings_contact_id", "bookings", ["contact_id"])
        op.create_index("ix_bookings_status", "bookings", ["status"])
    if not index_exists("bookings", "idx_bookings_calendar_interval"):
        op.create_index(
            "idx_bookings_calendar_interval",
            "bookings",
            ["calendar_id", "start_time", "end_time", "status"],
        )


def downgrade() -> None:
    op.drop_table("bookings")
    op.drop_table("calendar_date_overrides")
    op.drop_table("availability_windows")
    op.drop_table("calendars")
