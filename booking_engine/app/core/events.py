from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol

logger = logging.getLogger(__name__)

__all__ = [
    "BOOKING_CREATED",
    "BOOKING_CONFIRMED",
    "BOOKING_CANCELLED",
    "BOOKING_RESCHEDULED",
    "EventSink",
    "LoggingEventSink",
    "CallbackEventSink",
    "emit_safely",
]

BOOKING_CREATED = "booking_created"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_CANCELLED = "booking_cancelled"
BOOKING_RESCHEDULED = "booking_rescheduled"

# Strong references to in-flight async deliveries
_PENDING: set[asyncio.Future[Any]] = set()


class EventSink(Protocol):
    """Consumer of booking domain events (automation triggers, webhooks...)."""

    def emit(self, event_name: str, payload: Mapping[str, Any]) -> Awaitable[None] | None: ...


class LoggingEventSink:
    """Default sink: writes each event to the log."""

    def emit(self, event_name: str, payload: Mapping[str, Any]) -> None:
        logger.info("event %s: booking=%s calendar=%s", event_name, payload.get("booking_id"), payload.get("calendar_id"))


class CallbackEventSink:
    """Adapt a plain sync or async callable ``fn(event_name, payload)`` to a sink."""

    def __init__(self, fn: Callable[[str, Mapping[str, Any]], Any]) -> None:
        self._fn = fn

    def emit(self, event_name: str, payload: Mapping[str, Any]) -> Any:
        return self._fn(event_name, payload)


def _on_delivery_done(fut: asyncio.Future[Any]) -> None:
    _PENDING.discard(fut)
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        logger.error("Event delivery failed: %s", exc, exc_info=exc)


def emit_safely(sink: EventSink | None, event_name: str, payload: Mapping[str, Any]) -> None:
    """Hand an event to ``sink`` without ever raising or blocking the caller.

    Coroutine results are scheduled on the running loop; their failures are
    logged from a done-callback.
    """
    if sink is None:
        return
    try:
        result = sink.emit(event_name, payload)
    except Exception as e:
        logger.error("Event sink raised for %s (booking=%s): %s", event_name, payload.get("booking_id"), e)
        return
    if not inspect.isawaitable(result):
        return
    try:
        fut = asyncio.ensure_future(result)
    except RuntimeError as e:
        # no running loop: nothing can drive the coroutine
        logger.error("Cannot schedule event %s: %s", event_name, e)
        if inspect.iscoroutine(result):
            result.close()
        return
    _PENDING.add(fut)
    fut.add_done_callback(_on_delivery_done)
