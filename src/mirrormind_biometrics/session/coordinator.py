"""Monitoring session coordinator.

Architecture
~~~~~~~~~~~~
* Owns the session lifecycle: opening and closing the session record,
  driving the connection state machine and the buffer drain timer.
* Subscribes to the state machine's event bus; each reading is paired with
  the latest emotion label, kept in a bounded history and buffered for
  persistence.
* A *generation* token is bumped on every start and stop.  Work that
  completes for an older generation (a session open that raced a stop, a
  storage failure from a previous session's batch) is discarded.

Neither :meth:`start_session` nor :meth:`stop_session` raises for
transport or persistence failures; those surface in :attr:`error_message`.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime

import structlog

from mirrormind_biometrics.bluetooth.connection import ConnectionStateMachine
from mirrormind_biometrics.config import Settings, get_settings
from mirrormind_biometrics.emotion.source import EmotionSource
from mirrormind_biometrics.errors import StorageError
from mirrormind_biometrics.models import (
    ConnectionState,
    ConnectionStatus,
    IntegratedReading,
    Reading,
    SessionStats,
    SessionSummary,
    utcnow,
)
from mirrormind_biometrics.session.summary import live_stats, summarize_session
from mirrormind_biometrics.storage.repository import PersistenceBackend
from mirrormind_biometrics.streaming.buffer import SessionBuffer
from mirrormind_biometrics.streaming.events import (
    ConnectionStateChanged,
    ErrorRaised,
    ReadingReceived,
    SessionEnded,
    SessionStarted,
)

logger = structlog.get_logger(__name__)


class SessionCoordinator:
    """Tie the SmartBand connection, emotion labels and persistence together.

    Integration::

        coordinator = SessionCoordinator(machine, store, emotion_source=holder)
        await coordinator.start_session()
        ...
        summary = await coordinator.stop_session()
    """

    def __init__(
        self,
        machine: ConnectionStateMachine,
        backend: PersistenceBackend,
        *,
        emotion_source: EmotionSource | None = None,
        settings: Settings | None = None,
        buffer: SessionBuffer | None = None,
        user_id: str | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._machine = machine
        self._backend = backend
        self._emotions = emotion_source
        self._bus = machine.bus
        self._buffer = buffer or SessionBuffer(
            backend,
            capacity=settings.buffer_capacity,
            flush_threshold=settings.buffer_flush_threshold,
        )
        self._drain_interval = settings.drain_interval_seconds
        self._user_id = user_id or settings.default_user_id

        self._history: deque[IntegratedReading] = deque(maxlen=settings.history_limit)
        self._generation = 0
        self._active = False
        self._starting = False
        self._stopping = False
        self._session_id: str | None = None
        self._started_at: datetime | None = None

        self.connection_status = ConnectionStatus.DISCONNECTED
        self.current_reading: Reading | None = None
        self.error_message: str | None = None
        self.session_summary: SessionSummary | None = None

        self._unsubscribe = [
            self._bus.subscribe(ReadingReceived, self._on_reading),
            self._bus.subscribe(ConnectionStateChanged, self._on_connection_state),
            self._bus.subscribe(ErrorRaised, self._on_error),
        ]

    # ── Observable state ──────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def integrated_readings(self) -> list[IntegratedReading]:
        return list(self._history)

    @property
    def buffer(self) -> SessionBuffer:
        return self._buffer

    # ── Lifecycle ─────────────────────────────────────────────

    async def start_session(self) -> str | None:
        """Open a session and start streaming.

        No-op while a session is active, opening or still being closed.
        """
        if self._stopping:
            logger.info("session.start_rejected_while_stopping")
            return None
        if self._active or self._starting:
            logger.debug("session.start_ignored", session_id=self._session_id)
            return self._session_id

        self._starting = True
        self._generation += 1
        generation = self._generation
        self._history.clear()
        self._buffer.clear()
        self.error_message = None
        self.session_summary = None
        self.current_reading = None

        try:
            session_id = await self._backend.start_session(
                self._user_id, {"device_name": self._machine.device_name},
            )
        finally:
            self._starting = False
        if generation != self._generation:
            logger.info("session.start_superseded", session_id=session_id)
            await self._backend.end_session(session_id, None)
            return None
        self._check_backend(generation)

        self._session_id = session_id
        self._started_at = utcnow()
        self._active = True
        self._buffer.on_error = lambda error: self._on_storage_error(error, generation)

        self._machine.connect()
        self._machine.enable_auto_reconnect()
        self._buffer.start(self._drain_interval)

        logger.info("session.started", session_id=session_id, user_id=self._user_id)
        self._bus.publish(SessionStarted(session_id=session_id))
        return session_id

    async def stop_session(self) -> SessionSummary | None:
        """Stop streaming, flush and close the session.  Returns its summary."""
        if not self._active:
            if self._starting:
                # Abandon the start that is still waiting on persistence.
                self._generation += 1
                logger.info("session.start_cancelled")
            else:
                logger.debug("session.stop_ignored")
            return None

        self._active = False
        self._generation += 1
        generation = self._generation
        session_id = self._session_id
        self._buffer.on_error = lambda error: self._on_storage_error(error, generation)

        self._stopping = True
        try:
            self._machine.disable_auto_reconnect()
            self._machine.disconnect()
            await self._buffer.stop()
            await self._buffer.drain()

            duration = (utcnow() - self._started_at).total_seconds() if self._started_at else 0.0
            summary = summarize_session(self._history, duration)
            self.session_summary = summary
            await self._backend.end_session(session_id, summary)
            self._check_backend(generation)

            self._session_id = None
            self._started_at = None
            self.connection_status = ConnectionStatus.DISCONNECTED
        finally:
            self._stopping = False

        logger.info(
            "session.stopped",
            session_id=session_id,
            duration=summary.formatted_duration,
            readings=summary.total_readings,
            valid_heart_rate=summary.valid_heart_rate_readings,
        )
        self._bus.publish(SessionEnded(session_id=session_id, summary=summary))
        return summary

    async def toggle_session(self) -> None:
        if self._active:
            await self.stop_session()
        else:
            await self.start_session()

    def get_current_session_stats(self) -> SessionStats | None:
        if not self._active or self._started_at is None:
            return None
        duration = (utcnow() - self._started_at).total_seconds()
        return live_stats(self._history, duration, self._machine.state)

    def close(self) -> None:
        """Detach from the event bus."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    # ── Event handlers ────────────────────────────────────────

    def _on_reading(self, event: ReadingReceived) -> None:
        if not self._active:
            return
        emotion = self._emotions.latest() if self._emotions is not None else None
        self._history.append(IntegratedReading(reading=event.reading, emotion=emotion))
        self._buffer.append(event.reading)
        self.current_reading = event.reading

    def _on_connection_state(self, event: ConnectionStateChanged) -> None:
        self.connection_status = event.current.status
        if event.current is ConnectionState.DISCONNECTED:
            self.current_reading = None

    def _on_error(self, event: ErrorRaised) -> None:
        if event.source == "storage":
            self.error_message = f"Storage: {event.message}"
        else:
            self.error_message = event.message

    def _on_storage_error(self, error: StorageError, generation: int) -> None:
        if generation != self._generation:
            logger.debug("session.stale_storage_error", error=error.message)
            return
        self._bus.publish(ErrorRaised(source="storage", error=error))

    def _check_backend(self, generation: int) -> None:
        error = self._backend.last_error
        if error is not None:
            self._on_storage_error(error, generation)
