from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int_or_none(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except Exception:
        return None


def _env_str_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    vals: list[str] = []
    for token in raw.replace(";", ",").split(","):
        tok = token.strip().lower()
        if tok:
            vals.append(tok)
    return vals


def _normalize_status(code: str | None, fallback: str) -> str:
    cleaned = str(code or "").strip().lower()
    if cleaned in {"pending", "confirmed"}:
        return cleaned
    return fallback


# Timezone used when a caller supplies no display timezone
DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/New_York")

# Calendar defaults (match the calendars table defaults)
DEFAULT_DURATION_MINUTES: int = _env_int("DEFAULT_DURATION_MINUTES", 30)
DEFAULT_MIN_NOTICE_HOURS: int = _env_int("DEFAULT_MIN_NOTICE_HOURS", 24)
DEFAULT_MAX_FUTURE_DAYS: int = _env_int("DEFAULT_MAX_FUTURE_DAYS", 60)

# Slot walking step; 0 means "step by the calendar duration"
SLOT_STEP_MINUTES: int = _env_int("SLOT_STEP_MINUTES", 0)
# Widest date range a single slots query may ask for
MAX_SLOT_RANGE_DAYS: int = _env_int("MAX_SLOT_RANGE_DAYS", 62)

# Initial statuses chosen by caller context
PUBLIC_BOOKING_STATUS: str = _normalize_status(os.getenv("PUBLIC_BOOKING_STATUS"), "pending")
MANUAL_BOOKING_STATUS: str = _normalize_status(os.getenv("MANUAL_BOOKING_STATUS"), "confirmed")
# Statuses a cancellation token may still cancel
TOKEN_CANCEL_STATUSES: list[str] = _env_str_list("TOKEN_CANCEL_STATUSES", "pending,confirmed")

# Concurrency
STORE_RETRY_ATTEMPTS: int = max(1, _env_int("STORE_RETRY_ATTEMPTS", 2))
ADVISORY_LOCK_NAMESPACE: int = _env_int("ADVISORY_LOCK_NAMESPACE", 7341)

# Pagination
DEFAULT_PAGE_SIZE: int = _env_int("BOOKINGS_PAGE_SIZE", 50)
MAX_PAGE_SIZE: int = _env_int("BOOKINGS_MAX_PAGE_SIZE", 200)

# Logging
LOG_LEVEL_NAME: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()

# API auth
JWT_SECRET: str = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM: str = "HS256"
JWT_TTL_SECONDS: int = _env_int("JWT_TTL_SECONDS", 3600)
DEMO_ORGANIZATION_ID: int | None = _env_int_or_none("DEMO_ORGANIZATION_ID")

__all__ = [
    "DEFAULT_TIMEZONE",
    "DEFAULT_DURATION_MINUTES",
    "DEFAULT_MIN_NOTICE_HOURS",
    "DEFAULT_MAX_FUTURE_DAYS",
    "SLOT_STEP_MINUTES",
    "MAX_SLOT_RANGE_DAYS",
    "PUBLIC_BOOKING_STATUS",
    "MANUAL_BOOKING_STATUS",
    "TOKEN_CANCEL_STATUSES",
    "STORE_RETRY_ATTEMPTS",
    "ADVISORY_LOCK_NAMESPACE",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "LOG_LEVEL_NAME",
    "JWT_SECRET",
    "JWT_ALGORITHM",
    "JWT_TTL_SECONDS",
    "DEMO_ORGANIZATION_ID",
]
