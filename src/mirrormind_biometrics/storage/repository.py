"""Persistence collaborator for readings and monitoring sessions.

:class:`BiometricStore` never raises into the pipeline.  Every failure is
logged and captured as a :class:`StorageError` in :attr:`last_error`; the
next successful write clears it.
"""

from __future__ import annotations

import json
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from mirrormind_biometrics.config import Settings, get_settings
from mirrormind_biometrics.errors import StorageError, StorageErrorCode
from mirrormind_biometrics.models import Reading, SessionRecord, SessionSummary, utcnow
from mirrormind_biometrics.storage.database import (
    BiometricReadingRow,
    BiometricSessionRow,
    get_engine,
    init_db,
    session_factory_for,
)

logger = structlog.get_logger(__name__)

_STORAGE_FAILURES = (SQLAlchemyError, OSError, ValueError)


class PersistenceBackend(Protocol):
    """What the session pipeline needs from storage."""

    @property
    def last_error(self) -> StorageError | None: ...

    async def start_session(self, user_id: str, device_info: dict[str, Any] | None = None) -> str: ...

    async def store_batch(self, readings: list[Reading]) -> None: ...

    async def end_session(self, session_id: str, summary: SessionSummary | None) -> None: ...


def new_session_id(now: datetime | None = None) -> str:
    """``session_YYYYMMDD_HHMMSS_<8 hex>``"""
    now = now or utcnow()
    return f"session_{now:%Y%m%d_%H%M%S}_{secrets.token_hex(4)}"


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _to_ms(value: datetime | int) -> int:
    return value if isinstance(value, int) else int(value.timestamp() * 1000)


def _row_from_reading(reading: Reading, *, user_id: str, session_id: str | None) -> BiometricReadingRow:
    return BiometricReadingRow(
        session_id=session_id,
        user_id=user_id,
        heart_rate=reading.heart_rate,
        temperature=reading.temperature,
        raw_temperature=reading.raw_temperature,
        infrared_value=reading.infrared_value,
        contact_detected=reading.contact_detected,
        heart_rate_valid=reading.heart_rate_valid,
        device_timestamp=reading.device_timestamp,
        received_at=reading.received_at,
        heart_rate_category=reading.heart_rate_category.value,
        temperature_status=reading.temperature_status.value,
        sensor_quality=reading.sensor_quality.value,
    )


def _reading_from_row(row: BiometricReadingRow) -> Reading:
    return Reading(
        heart_rate=row.heart_rate,
        temperature=row.temperature,
        raw_temperature=row.raw_temperature,
        infrared_value=row.infrared_value,
        contact_detected=row.contact_detected,
        heart_rate_valid=row.heart_rate_valid,
        device_timestamp=row.device_timestamp,
        received_at=_aware(row.received_at),
    )


def _record_from_row(row: BiometricSessionRow) -> SessionRecord:
    return SessionRecord(
        session_id=row.session_id,
        user_id=row.user_id,
        started_at=_aware(row.started_at),
        ended_at=_aware(row.ended_at) if row.ended_at else None,
        status=row.status,
        summary=SessionSummary.model_validate_json(row.summary_json) if row.summary_json else None,
        device_info=json.loads(row.device_info_json or "{}"),
    )


class BiometricStore:
    """SQL-backed store: rolling reading log plus session records.

    Usage::

        store = BiometricStore()
        await store.init()
        session_id = await store.start_session("user-1")
        await store.store_batch(readings)
        await store.end_session(session_id, summary)
    """

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        *,
        settings: Settings | None = None,
        user_id: str | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._engine = engine or get_engine()
        self._sessions = session_factory_for(self._engine)
        self.max_readings = settings.storage_max_readings
        self.user_id = user_id or settings.default_user_id
        self._active_session: str | None = None
        self._last_error: StorageError | None = None
        self.upload_count = 0
        self.last_upload_time: datetime | None = None

    @property
    def last_error(self) -> StorageError | None:
        return self._last_error

    async def init(self) -> None:
        await init_db(self._engine)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── Sessions ──────────────────────────────────────────────

    async def start_session(self, user_id: str, device_info: dict[str, Any] | None = None) -> str:
        """Open a session record.  The id is returned even when the write fails."""
        started_at = utcnow()
        session_id = new_session_id(started_at)
        self._active_session = session_id
        self.user_id = user_id
        try:
            async with self._sessions() as db:
                db.add(BiometricSessionRow(
                    session_id=session_id,
                    user_id=user_id,
                    started_at=started_at,
                    status="active",
                    device_info_json=json.dumps(device_info or {}),
                ))
                await db.commit()
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.SESSION_CREATION_FAILED, exc)
            return session_id
        self._last_error = None
        logger.info("storage.session_started", session_id=session_id, user_id=user_id)
        return session_id

    async def end_session(self, session_id: str, summary: SessionSummary | None) -> None:
        if self._active_session == session_id:
            self._active_session = None
        try:
            async with self._sessions() as db:
                row = await db.get(BiometricSessionRow, session_id)
                if row is None:
                    raise ValueError(f"unknown session {session_id}")
                row.ended_at = utcnow()
                row.status = "completed"
                row.summary_json = summary.model_dump_json() if summary is not None else None
                await db.commit()
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.SESSION_UPDATE_FAILED, exc)
            return
        self._last_error = None
        logger.info("storage.session_ended", session_id=session_id)

    async def list_sessions(self, limit: int = 50) -> list[SessionRecord]:
        """Stored sessions, newest first."""
        try:
            async with self._sessions() as db:
                stmt = (
                    select(BiometricSessionRow)
                    .order_by(BiometricSessionRow.started_at.desc())
                    .limit(limit)
                )
                rows = (await db.execute(stmt)).scalars().all()
                return [_record_from_row(r) for r in rows]
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.DATA_PARSING_FAILED, exc)
            return []

    # ── Readings: write ───────────────────────────────────────

    async def store(self, reading: Reading) -> None:
        await self._insert([reading], StorageErrorCode.UPLOAD_FAILED)

    async def store_batch(self, readings: list[Reading]) -> None:
        if not readings:
            return
        await self._insert(readings, StorageErrorCode.BATCH_UPLOAD_FAILED)

    async def _insert(self, readings: list[Reading], code: StorageErrorCode) -> None:
        try:
            async with self._sessions() as db:
                db.add_all([
                    _row_from_reading(r, user_id=self.user_id, session_id=self._active_session)
                    for r in readings
                ])
                await db.flush()
                await self._trim(db)
                await db.commit()
        except _STORAGE_FAILURES as exc:
            self._fail(code, exc)
            return
        self._last_error = None
        self.upload_count += len(readings)
        self.last_upload_time = utcnow()
        logger.debug("storage.readings_stored", count=len(readings), total=self.upload_count)

    async def _trim(self, db) -> None:
        """Keep only the newest ``max_readings`` rows."""
        cutoff = (await db.execute(
            select(BiometricReadingRow.id)
            .order_by(BiometricReadingRow.id.desc())
            .offset(self.max_readings)
            .limit(1)
        )).scalar()
        if cutoff is not None:
            await db.execute(delete(BiometricReadingRow).where(BiometricReadingRow.id <= cutoff))

    async def cleanup_older_than(self, days: int = 30) -> int:
        """Delete readings received more than *days* ago.  Returns count deleted."""
        cutoff = utcnow() - timedelta(days=days)
        try:
            async with self._sessions() as db:
                result = await db.execute(
                    delete(BiometricReadingRow).where(BiometricReadingRow.received_at < cutoff)
                )
                await db.commit()
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.STORAGE_ERROR, exc)
            return 0
        logger.info("storage.cleanup", deleted=result.rowcount, days=days)
        return result.rowcount or 0

    async def clear(self) -> int:
        try:
            async with self._sessions() as db:
                result = await db.execute(delete(BiometricReadingRow))
                await db.commit()
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.STORAGE_ERROR, exc)
            return 0
        logger.info("storage.cleared", deleted=result.rowcount)
        return result.rowcount or 0

    # ── Readings: read ────────────────────────────────────────

    async def get_readings(self, start: datetime | int, end: datetime | int) -> list[Reading]:
        """Readings whose device timestamp falls in ``[start, end]``, oldest first."""
        try:
            async with self._sessions() as db:
                stmt = (
                    select(BiometricReadingRow)
                    .where(
                        BiometricReadingRow.device_timestamp >= _to_ms(start),
                        BiometricReadingRow.device_timestamp <= _to_ms(end),
                    )
                    .order_by(BiometricReadingRow.device_timestamp, BiometricReadingRow.id)
                )
                rows = (await db.execute(stmt)).scalars().all()
                return [_reading_from_row(r) for r in rows]
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.DATA_PARSING_FAILED, exc)
            return []

    async def get_latest(self) -> Reading | None:
        try:
            async with self._sessions() as db:
                stmt = select(BiometricReadingRow).order_by(BiometricReadingRow.id.desc()).limit(1)
                row = (await db.execute(stmt)).scalar_one_or_none()
                return _reading_from_row(row) if row is not None else None
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.DATA_PARSING_FAILED, exc)
            return None

    async def count(self) -> int:
        try:
            async with self._sessions() as db:
                result = await db.execute(select(func.count()).select_from(BiometricReadingRow))
                return result.scalar() or 0
        except _STORAGE_FAILURES as exc:
            self._fail(StorageErrorCode.STORAGE_ERROR, exc)
            return 0

    # ── Internals ─────────────────────────────────────────────

    def _fail(self, code: StorageErrorCode, exc: Exception) -> None:
        self._last_error = StorageError(code, str(exc))
        logger.error("storage.error", code=code.value, error=str(exc), error_type=type(exc).__name__)
