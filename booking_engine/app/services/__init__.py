"""Service package exports."""

from .booking_services import AttendeeInfo, BookingLifecycle, BookingRepo
from .calendar_services import CalendarRepo
from .conflict_guard import ConflictGuard
from .slot_services import generate_slots

__all__ = [
    "AttendeeInfo",
    "BookingLifecycle",
    "BookingRepo",
    "CalendarRepo",
    "ConflictGuard",
    "generate_slots",
]
