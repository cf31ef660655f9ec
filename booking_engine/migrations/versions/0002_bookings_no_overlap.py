"""Exclusion constraint: no overlapping active bookings per calendar

Revision ID: 0002_bookings_no_overlap
Revises: 0001_initial_schema
Create Date: 2026-10-01 10:30:00.000000

Installs `btree_gist` (if missing), refuses to proceed while overlapping
active bookings exist (they are written to `bookings_overlap_audit`), then
adds `bookings_no_overlap`:

    EXCLUDE USING gist (calendar_id WITH =, tstzrange(start_time, end_time) WITH &&)
    WHERE (status IN ('pending', 'confirmed'))

The authoritative check is the one ConflictGuard runs under the per-calendar
lock, where both intervals are padded by the calendar's buffers. This
constraint compares the raw stored intervals only: it catches plain overlap
written around the application, not buffer violations. PostgreSQL only.
"""
from alembic import op
import sqlalchemy as sa

from booking_engine.migrations.utils import is_postgres, pg_constraint_exists


# revision identifiers, used by Alembic.
revision = "0002_bookings_no_overlap"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None

CONSTRAINT_NAME = "bookings_no_overlap"

_OVERLAPS = """
    FROM bookings b1
    JOIN bookings b2 ON b1.calendar_id = b2.calendar_id AND b1.id < b2.id
    WHERE b1.status IN ('pending', 'confirmed') AND b2.status IN ('pending', 'confirmed')
      AND tstzrange(b1.start_time, b1.end_time) && tstzrange(b2.start_time, b2.end_time)
"""


def upgrade() -> None:
    if not is_postgres():
        return
    conn = op.get_bind()

    conn.execute(sa.text("CREATE EXTENSION IF NOT EXISTS btree_gist;"))

    conn.execute(
        sa.text(
            """
            CREATE TABLE IF NOT EXISTS bookings_overlap_audit (
                booking_a bigint,
                booking_b bigint,
                calendar_id bigint,
                a_start_time timestamptz,
                a_end_time timestamptz,
                b_start_time timestamptz,
                b_end_time timestamptz,
                inserted_at timestamptz DEFAULT now()
            );
            """
        )
    )

    conflict = conn.execute(sa.text("SELECT 1 " + _OVERLAPS + " LIMIT 1;")).first()
    if conflict:
        conn.execute(
            sa.text(
                "INSERT INTO bookings_overlap_audit"
                "(booking_a, booking_b, calendar_id, a_start_time, a_end_time, b_start_time, b_end_time) "
                "SELECT b1.id, b2.id, b1.calendar_id, b1.start_time, b1.end_time, b2.start_time, b2.end_time "
                + _OVERLAPS
                + ";"
            )
        )
        raise RuntimeError(
            "Found overlapping active bookings; audit written to bookings_overlap_audit. "
            "Cancel or move the overlapping bookings before re-running this migration."
        )

    if not pg_constraint_exists(CONSTRAINT_NAME):
        conn.execute(
            sa.text(
                f"ALTER TABLE bookings ADD CONSTRAINT {CONSTRAINT_NAME} "
                "EXCLUDE USING gist (calendar_id WITH =, tstzrange(start_time, end_time) WITH &&) "
                "WHERE (status IN ('pending', 'confirmed'));"
            )
        )


def downgrade() -> None:
    if not is_postgres():
        return
    op.execute(f"ALTER TABLE bookings DROP CONSTRAINT IF EXISTS {CONSTRAINT_NAME};")
