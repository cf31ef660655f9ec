from __future__ import annotations
import logging
import os
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables from .env
load_dotenv()

from booking_engine.app.core import constants  # noqa: E402  (after load_dotenv)

# Runtime settings (tests and the API entrypoint may override entries)
SETTINGS: Dict[str, Any] = {
    "database_url": os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://booking_user:booking_pass@db:5432/booking_db",
    ),
    # IANA timezone used when a booking arrives without one
    "default_timezone": constants.DEFAULT_TIMEZONE,
    "public_booking_status": constants.PUBLIC_BOOKING_STATUS,
    "manual_booking_status": constants.MANUAL_BOOKING_STATUS,
    "token_cancel_statuses": list(constants.TOKEN_CANCEL_STATUSES),
    # Whole check-and-write attempts (first try included)
    "store_retry_attempts": constants.STORE_RETRY_ATTEMPTS,
    "advisory_lock_namespace": constants.ADVISORY_LOCK_NAMESPACE,
    "slot_step_minutes": constants.SLOT_STEP_MINUTES,
    "max_slot_range_days": constants.MAX_SLOT_RANGE_DAYS,
    "bookings_page_size": constants.DEFAULT_PAGE_SIZE,
    "bookings_max_page_size": constants.MAX_PAGE_SIZE,
    "jwt_secret": constants.JWT_SECRET,
    "jwt_ttl_seconds": constants.JWT_TTL_SECONDS,
    "cors_origins": [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()],
}


def get_setting(key: str, default: Any = None) -> Any:
    """Return a runtime setting by key.

    Args:
        key: Setting name.
        default: Value returned when the key is missing.

    Returns:
        The setting value or ``default``.
    """
    value = SETTINGS.get(key, default)
    logger.debug("Setting read: key=%s, value=%s", key, value)
    return value


def get_default_timezone() -> ZoneInfo:
    """Resolve SETTINGS['default_timezone'] with a UTC fallback."""
    name = str(SETTINGS.get("default_timezone") or "UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown default timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def get_initial_status(source: str) -> str:
    """Initial booking status for the given booking source."""
    key = "public_booking_status" if source == "booking_page" else "manual_booking_status"
    val = str(SETTINGS.get(key) or "").lower()
    if val in {"pending", "confirmed"}:
        return val
    return "pending" if source == "booking_page" else "confirmed"


def get_token_cancel_statuses() -> frozenset[str]:
    """Statuses a public cancellation token is allowed to cancel."""
    raw = SETTINGS.get("token_cancel_statuses") or ["pending", "confirmed"]
    allowed = {str(s).lower() for s in raw} & {"pending", "confirmed"}
    return frozenset(allowed or {"pending", "confirmed"})


def get_store_retry_attempts() -> int:
    try:
        return max(1, int(SETTINGS.get("store_retry_attempts", 2)))
    except (TypeError, ValueError):
        return 2


def get_slot_step_minutes() -> int:
    """Slot walking step in minutes (0 = calendar duration)."""
    try:
        return max(0, int(SETTINGS.get("slot_step_minutes", 0)))
    except (TypeError, ValueError):
        return 0


def get_max_slot_range_days() -> int:
    try:
        return max(1, int(SETTINGS.get("max_slot_range_days", 62)))
    except (TypeError, ValueError):
        return 62


def get_page_size(requested: int | None = None) -> int:
    """Clamp a requested page size into [1, bookings_max_page_size]."""
    try:
        max_size = max(1, int(SETTINGS.get("bookings_max_page_size", 200)))
        size = int(requested) if requested else int(SETTINGS.get("bookings_page_size", 50))
    except (TypeError, ValueError):
        return 50
    return max(1, min(size, max_size))


__all__ = [
    "SETTINGS",
    "get_setting",
    "get_default_timezone",
    "get_initial_status",
    "get_token_cancel_statuses",
    "get_store_retry_attempts",
    "get_slot_step_minutes",
    "get_max_slot_range_days",
    "get_page_size",
]
