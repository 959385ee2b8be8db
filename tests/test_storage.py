"""Tests for the SQL-backed biometric store."""

import re

import pytest

from mirrormind_biometrics.errors import StorageErrorCode
from mirrormind_biometrics.models import SessionSummary
from mirrormind_biometrics.storage.repository import new_session_id

from conftest import make_reading


def test_session_id_format():
    assert re.fullmatch(r"session_\d{8}_\d{6}_[0-9a-f]{8}", new_session_id())


class TestReadings:
    @pytest.mark.asyncio
    async def test_store_and_read_back(self, memory_store):
        await memory_store.store(make_reading(75.0, timestamp=1_000))
        latest = await memory_store.get_latest()
        assert latest.heart_rate == 75.0
        assert latest.device_timestamp == 1_000
        assert latest.received_at.tzinfo is not None
        assert memory_store.upload_count == 1
        assert memory_store.last_upload_time is not None
        assert memory_store.last_error is None

    @pytest.mark.asyncio
    async def test_batch_and_window_query(self, memory_store):
        await memory_store.store_batch([make_reading(60.0 + i, timestamp=i * 1000) for i in range(10)])
        window = await memory_store.get_readings(2_000, 4_000)
        assert [r.device_timestamp for r in window] == [2_000, 3_000, 4_000]
        assert await memory_store.count() == 10

    @pytest.mark.asyncio
    async def test_rolling_cap(self, memory_store):
        memory_store.max_readings = 5
        await memory_store.store_batch([make_reading(timestamp=i) for i in range(4)])
        await memory_store.store_batch([make_reading(timestamp=i) for i in range(4, 8)])
        assert await memory_store.count() == 5
        remaining = await memory_store.get_readings(0, 100)
        assert [r.device_timestamp for r in remaining] == [3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_empty_batch_is_a_no_op(self, memory_store):
        await memory_store.store_batch([])
        assert memory_store.upload_count == 0

    @pytest.mark.asyncio
    async def test_clear_and_cleanup(self, memory_store):
        await memory_store.store_batch([make_reading(timestamp=i) for i in range(3)])
        assert await memory_store.cleanup_older_than(days=1) == 0
        assert await memory_store.clear() == 3
        assert await memory_store.get_latest() is None


class TestSessions:
    @pytest.mark.asyncio
    async def test_session_round_trip(self, memory_store):
        session_id = await memory_store.start_session("user-1", {"device_name": "band"})
        await memory_store.store_batch([make_reading()])
        summary = SessionSummary(
            duration_seconds=30.0, total_readings=1, valid_heart_rate_readings=1, average_heart_rate=72.0,
        )
        await memory_store.end_session(session_id, summary)

        [record] = await memory_store.list_sessions()
        assert record.session_id == session_id
        assert record.status == "completed"
        assert record.user_id == "user-1"
        assert record.summary == summary
        assert record.device_info == {"device_name": "band"}
        assert record.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_unknown_session_update_is_captured(self, memory_store):
        await memory_store.end_session("session_missing", None)
        assert memory_store.last_error.code is StorageErrorCode.SESSION_UPDATE_FAILED

    @pytest.mark.asyncio
    async def test_failures_are_captured_not_raised(self, memory_store):
        async with memory_store._engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE biometric_readings")
        await memory_store.store_batch([make_reading()])
        assert memory_store.last_error.code is StorageErrorCode.BATCH_UPLOAD_FAILED
        assert memory_store.upload_count == 0

        await memory_store.store(make_reading())
        assert memory_store.last_error.code is StorageErrorCode.UPLOAD_FAILED
        assert await memory_store.count() == 0
        assert memory_store.last_error.code is StorageErrorCode.STORAGE_ERROR

    @pytest.mark.asyncio
    async def test_success_clears_last_error(self, memory_store):
        await memory_store.end_session("session_missing", None)
        session_id = await memory_store.start_session("user-1")
        assert session_id.startswith("session_")
        assert memory_store.last_error is None

