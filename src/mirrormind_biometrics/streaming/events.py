"""In-process event bus connecting the connection state machine, the session
coordinator and any UI or test observers.

Handlers run synchronously, in registration order, on the event-loop thread
that publishes.  A failing handler is logged and skipped; it never prevents
delivery to the others.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import structlog

from mirrormind_biometrics.models import ConnectionState, Reading, SessionSummary

logger = structlog.get_logger(__name__)

E = TypeVar("E")


# ── Events ────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ConnectionStateChanged:
    previous: ConnectionState
    current: ConnectionState


@dataclass(frozen=True, slots=True)
class ReadingReceived:
    reading: Reading


@dataclass(frozen=True, slots=True)
class ErrorRaised:
    source: str  # "bluetooth" | "storage"
    error: Exception

    @property
    def message(self) -> str:
        return getattr(self.error, "message", str(self.error))


@dataclass(frozen=True, slots=True)
class SessionStarted:
    session_id: str


@dataclass(frozen=True, slots=True)
class SessionEnded:
    session_id: str
    summary: SessionSummary | None


# ── Bus ───────────────────────────────────────────────────────


class EventBus:
    """Typed publish/subscribe hub."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)
        self._published_total = 0

    # ── Subscription ──────────────────────────────────────────

    def subscribe(self, event_type: type[E], fn: Callable[[E], None]) -> Callable[[], None]:
        """Register *fn* for *event_type*.  Returns a callable that unsubscribes."""
        self._handlers[event_type].append(fn)

        def unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(fn)
            except ValueError:
                pass

        return unsubscribe

    def subscriber_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, ()))

    # ── Publishing ────────────────────────────────────────────

    def publish(self, event: object) -> None:
        self._published_total += 1
        for fn in list(self._handlers.get(type(event), ())):
            try:
                fn(event)
            except Exception as exc:
                logger.error(
                    "event_bus.handler_error",
                    handler=getattr(fn, "__qualname__", repr(fn)),
                    event=type(event).__name__,
                    error=str(exc),
                )

    @property
    def published_total(self) -> int:
        return self._published_total
