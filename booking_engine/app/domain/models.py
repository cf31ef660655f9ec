from datetime import UTC, date as _date, datetime, time as _time
from enum import Enum as _Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from booking_engine.app.core.constants import (
    DEFAULT_DURATION_MINUTES,
    DEFAULT_MAX_FUTURE_DAYS,
    DEFAULT_MIN_NOTICE_HOURS,
    DEFAULT_TIMEZONE,
)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class (explicit for mypy)."""

    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always binds and loads as UTC.

    Backends without native timezone support (SQLite in tests) hand back naive
    values; those are interpreted as UTC so comparisons stay aware-to-aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to a UTC column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class BookingStatus(_Enum):  # Values match DB labels
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class BookingSource(_Enum):
    MANUAL = "manual"
    BOOKING_PAGE = "booking_page"


def normalize_booking_status(value: str | BookingStatus | None) -> BookingStatus | None:
    """Return a BookingStatus enum when possible (accepts strings/enum values)."""
    if isinstance(value, BookingStatus):
        return value
    if isinstance(value, str):
        try:
            return BookingStatus(value.strip().lower())
        except ValueError:
            return None
    return None


TERMINAL_STATUSES = frozenset({BookingStatus.CANCELLED})

# Only these statuses occupy time on a calendar
ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

# Allowed lifecycle moves; reschedule keeps the state (confirmed -> confirmed)
ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Calendar(Base):
    __tablename__ = "calendars"
    # public booking URLs address a calendar by slug alone
    __table_args__ = (UniqueConstraint("slug", name="uq_calendars_slug"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    slug: Mapped[str] = mapped_column(String(255))
    timezone: Mapped[str] = mapped_column(String(100), default=DEFAULT_TIMEZONE)
    # Booking settings
    duration_minutes: Mapped[int] = mapped_column(Integer, default=DEFAULT_DURATION_MINUTES)
    buffer_before_minutes: Mapped[int] = mapped_column(Integer, default=0)
    buffer_after_minutes: Mapped[int] = mapped_column(Integer, default=0)
    min_notice_hours: Mapped[int] = mapped_column(Integer, default=DEFAULT_MIN_NOTICE_HOURS)
    max_future_days: Mapped[int] = mapped_column(Integer, default=DEFAULT_MAX_FUTURE_DAYS)
    # Staff member new bookings are assigned to (owned by member management)
    assigned_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    color: Mapped[str] = mapped_column(String(7), default="#3B82F6")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow)


class AvailabilityWindow(Base):
    __tablename__ = "availability_windows"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id", ondelete="CASCADE"), index=True)
    # Day of week: Sunday=0 .. Saturday=6
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    # Local wall-clock in the calendar timezone
    start_time: Mapped[_time] = mapped_column(Time, nullable=False)
    end_time: Mapped[_time] = mapped_column(Time, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class CalendarDateOverride(Base):
    __tablename__ = "calendar_date_overrides"
    __table_args__ = (
        UniqueConstraint("calendar_id", "override_date", name="uq_date_overrides_calendar_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id", ondelete="CASCADE"), index=True)
    override_date: Mapped[_date] = mapped_column(Date, index=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=False)
    start_time: Mapped[_time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[_time | None] = mapped_column(Time, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class Booking(Base):
    __tablename__ = "bookings"
    # Covers the overlap predicate; the per-calendar GiST exclusion
    # constraint lives in the Alembic migration (PostgreSQL only).
    __table_args__ = (
        Index("idx_bookings_calendar_interval", "calendar_id", "start_time", "end_time", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, index=True)
    calendar_id: Mapped[int] = mapped_column(ForeignKey("calendars.id", ondelete="CASCADE"))
    contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    # Display only; intervals are always UTC instants
    timezone: Mapped[str] = mapped_column(String(100), nullable=False)
    # Attendee info (if no contact linked)
    attendee_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attendee_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attendee_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    assigned_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(
            BookingStatus,
            name="booking_status",
            values_callable=lambda e: [m.value for m in e],  # persist lowercase labels
            native_enum=False,
            length=20,
        ),
        default=BookingStatus.PENDING,
        index=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    source: Mapped[BookingSource] = mapped_column(
        Enum(
            BookingSource,
            name="booking_source",
            values_callable=lambda e: [m.value for m in e],
            native_enum=False,
            length=20,
        ),
        default=BookingSource.BOOKING_PAGE,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow)


__all__ = [
    "Base",
    "UTCDateTime",
    "BookingStatus",
    "BookingSource",
    "Calendar",
    "AvailabilityWindow",
    "CalendarDateOverride",
    "Booking",
    "normalize_booking_status",
    "can_transition",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
]
