"""Booking error taxonomy.

Every failure the engine reports to callers is a ``BookingError`` carrying a
short machine-readable ``code``. The HTTP layer maps each subclass to a
status code; services never return error dicts.
"""
from __future__ import annotations

from sqlalchemy.exc import DBAPIError, OperationalError

__all__ = [
    "BookingError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "TransientStoreError",
    "is_transient_db_error",
]

# serialization_failure, deadlock_detected, lock_not_available, query_canceled (lock_timeout)
_TRANSIENT_PGCODES = frozenset({"40001", "40P01", "55P03", "57014"})


class BookingError(Exception):
    """Base class for engine errors."""

    default_code = "booking_error"

    def __init__(self, code: str | None = None, message: str | None = None) -> None:
        self.code = code or self.default_code
        super().__init__(message or self.code)


class ValidationError(BookingError):
    """Malformed input, inactive calendar, or interval outside the rules."""

    default_code = "invalid_data"


class ConflictError(BookingError):
    """The requested interval overlaps an active booking."""

    default_code = "slot_unavailable"


class NotFoundError(BookingError):
    """Booking, calendar or token does not resolve (or is already cancelled)."""

    default_code = "not_found"


class TransientStoreError(BookingError):
    """Serialization failure or lock timeout; the whole operation may be retried once."""

    default_code = "store_busy"


def is_transient_db_error(exc: BaseException) -> bool:
    """Return True for store errors worth one automatic retry."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in _TRANSIENT_PGCODES:
        return True
    if isinstance(exc, OperationalError):
        text = str(orig or exc).lower()
        return "database is locked" in text or "could not serialize" in text or "deadlock" in text
    return False
