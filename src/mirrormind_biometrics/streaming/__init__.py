"""Streaming sub-package — event bus and session buffer."""

from mirrormind_biometrics.streaming.buffer import SessionBuffer
from mirrormind_biometrics.streaming.events import (
    ConnectionStateChanged,
    ErrorRaised,
    EventBus,
    ReadingReceived,
    SessionEnded,
    SessionStarted,
)

__all__ = [
    "ConnectionStateChanged",
    "ErrorRaised",
    "EventBus",
    "ReadingReceived",
    "SessionBuffer",
    "SessionEnded",
    "SessionStarted",
]
