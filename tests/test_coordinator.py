"""Tests for the monitoring session coordinator."""

import asyncio

import pytest

from mirrormind_biometrics.emotion.source import LatestEmotionHolder
from mirrormind_biometrics.models import ConnectionState, ConnectionStatus, EmotionLabel
from mirrormind_biometrics.protocol.codec import encode_reading
from mirrormind_biometrics.session.coordinator import SessionCoordinator
from mirrormind_biometrics.streaming.buffer import SessionBuffer
from mirrormind_biometrics.streaming.events import SessionEnded, SessionStarted

from conftest import CHARACTERISTIC, RecordingStore, drive_to_subscribed, make_reading


@pytest.fixture
def emotions() -> LatestEmotionHolder:
    return LatestEmotionHolder()


@pytest.fixture
def coordinator(machine, recording_store, emotions, settings) -> SessionCoordinator:
    buffer = SessionBuffer(recording_store, capacity=5, flush_threshold=5)
    return SessionCoordinator(
        machine, recording_store, emotion_source=emotions, settings=settings, buffer=buffer,
    )


def _stream(machine, band, readings):
    for reading in readings:
        machine.on_value(band, CHARACTERISTIC, encode_reading(reading), None)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_opens_session_and_connects(self, coordinator, machine, recording_store, bus):
        started = []
        bus.subscribe(SessionStarted, started.append)
        session_id = await coordinator.start_session()
        assert coordinator.is_active
        assert coordinator.session_id == session_id
        assert machine.state is ConnectionState.SCANNING
        assert machine.auto_reconnect_enabled
        assert recording_store.started == ["default_user"]
        assert [e.session_id for e in started] == [session_id]
        await coordinator.stop_session()

    @pytest.mark.asyncio
    async def test_double_start_is_a_no_op(self, coordinator, machine, recording_store, band):
        first = await coordinator.start_session()
        drive_to_subscribed(machine, band)
        _stream(machine, band, [make_reading(timestamp=i) for i in range(3)])

        second = await coordinator.start_session()
        assert first == second
        assert len(recording_store.started) == 1
        assert [r.reading.device_timestamp for r in coordinator.integrated_readings] == [0, 1, 2]
        assert len(coordinator.buffer) == 3
        await coordinator.stop_session()

    @pytest.mark.asyncio
    async def test_start_while_stopping_is_rejected(self, machine, emotions, settings, band):
        class SlowEndStore(RecordingStore):
            async def end_session(self, session_id, summary):
                await asyncio.sleep(0.02)
                await super().end_session(session_id, summary)

        store = SlowEndStore()
        coordinator = SessionCoordinator(machine, store, emotion_source=emotions, settings=settings)
        await coordinator.start_session()
        drive_to_subscribed(machine, band)
        _stream(machine, band, [make_reading(), make_reading()])

        stopping = asyncio.create_task(coordinator.stop_session())
        await asyncio.sleep(0.005)
        assert await coordinator.start_session() is None
        summary = await stopping
        assert summary.total_readings == 2
        assert not coordinator.is_active
        assert coordinator.session_id is None
        assert machine.state is ConnectionState.DISCONNECTED
        assert len(store.started) == 1

        new_id = await coordinator.start_session()
        assert new_id == "session_test_2"
        assert coordinator.session_id == new_id
        assert coordinator.started_at is not None
        assert coordinator.get_current_session_stats() is not None
        await coordinator.stop_session()

    @pytest.mark.asyncio
    async def test_stop_without_session_is_a_no_op(self, coordinator, recording_store):
        assert await coordinator.stop_session() is None
        assert recording_store.ended == []

    @pytest.mark.asyncio
    async def test_toggle(self, coordinator):
        await coordinator.toggle_session()
        assert coordinator.is_active
        await coordinator.toggle_session()
        assert not coordinator.is_active

    @pytest.mark.asyncio
    async def test_stop_resets_state(self, coordinator, machine, band, bus):
        ended = []
        bus.subscribe(SessionEnded, ended.append)
        session_id = await coordinator.start_session()
        drive_to_subscribed(machine, band)
        assert coordinator.connection_status is ConnectionStatus.CONNECTED

        summary = await coordinator.stop_session()
        assert not coordinator.is_active
        assert coordinator.session_id is None
        assert coordinator.started_at is None
        assert coordinator.session_summary == summary
        assert coordinator.connection_status is ConnectionStatus.DISCONNECTED
        assert machine.state is ConnectionState.DISCONNECTED
        assert not machine.auto_reconnect_enabled
        assert ended[0].session_id == session_id

    @pytest.mark.asyncio
    async def test_stop_while_start_pending_abandons_it(self, machine, emotions, settings):
        class SlowStore(RecordingStore):
            async def start_session(self, user_id, device_info=None):
                await asyncio.sleep(0.02)
                return await super().start_session(user_id, device_info)

        store = SlowStore()
        coordinator = SessionCoordinator(machine, store, emotion_source=emotions, settings=settings)
        pending = asyncio.create_task(coordinator.start_session())
        await asyncio.sleep(0)
        assert await coordinator.stop_session() is None
        assert await pending is None
        assert not coordinator.is_active
        assert machine.state is ConnectionState.DISCONNECTED
        assert store.ended == [("session_test_1", None)]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_end_to_end_session(self, coordinator, machine, recording_store, emotions, band):
        emotions.update(EmotionLabel(emotion="happy", confidence=0.8, message="smiling"))
        await coordinator.start_session()
        drive_to_subscribed(machine, band)
        _stream(machine, band, [make_reading(100.0, timestamp=i) for i in range(12)])

        assert len(coordinator.integrated_readings) == 12
        assert coordinator.current_reading.device_timestamp == 11
        for item in coordinator.integrated_readings:
            assert item.correlation_score == pytest.approx(0.2)

        stats = coordinator.get_current_session_stats()
        assert stats.total_readings == 12
        assert stats.connection_state is ConnectionState.SUBSCRIBED

        summary = await coordinator.stop_session()
        assert [len(b) for b in recording_store.batches] == [5, 5, 2]
        assert summary.total_readings == 12
        assert summary.valid_heart_rate_readings == 12
        assert summary.average_heart_rate == pytest.approx(100.0)
        assert summary.emotion_integration_count == 12
        assert recording_store.ended[0][1] == summary
        assert coordinator.get_current_session_stats() is None

    @pytest.mark.asyncio
    async def test_readings_outside_a_session_are_ignored(self, coordinator, machine, band):
        drive_to_subscribed(machine, band)
        _stream(machine, band, [make_reading()])
        assert coordinator.integrated_readings == []
        assert len(coordinator.buffer) == 0

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, machine, recording_store, settings, band):
        coordinator = SessionCoordinator(machine, recording_store, settings=settings)
        await coordinator.start_session()
        drive_to_subscribed(machine, band)
        _stream(machine, band, [make_reading(timestamp=i) for i in range(105)])
        history = coordinator.integrated_readings
        assert len(history) == 100
        assert history[0].reading.device_timestamp == 5
        assert not history[0].has_emotion_data
        await coordinator.stop_session()

    @pytest.mark.asyncio
    async def test_restart_clears_previous_session(self, coordinator, machine, band):
        await coordinator.start_session()
        drive_to_subscribed(machine, band)
        _stream(machine, band, [make_reading()])
        await coordinator.stop_session()
        await coordinator.start_session()
        assert coordinator.integrated_readings == []
        assert coordinator.session_summary is None
        await coordinator.stop_session()


class TestErrors:
    @pytest.mark.asyncio
    async def test_bluetooth_errors_are_verbatim(self, coordinator, machine, band):
        await coordinator.start_session()
        machine.on_peripheral_discovered(band)
        machine.on_connect_failed(band, "Peer removed pairing")
        assert coordinator.error_message == "Connection failed: Peer removed pairing"
        await coordinator.stop_session()

    @pytest.mark.asyncio
    async def test_storage_errors_are_prefixed(self, coordinator, machine, recording_store, band):
        recording_store.fail_batches = True
        await coordinator.start_session()
        drive_to_subscribed(machine, band)
        _stream(machine, band, [make_reading(), make_reading()])
        summary = await coordinator.stop_session()
        assert summary.total_readings == 2
        assert coordinator.error_message == "Storage: Batch upload failed: disk full"

    @pytest.mark.asyncio
    async def test_session_creation_failure_does_not_block_streaming(self, coordinator, recording_store):
        recording_store.fail_sessions = True
        session_id = await coordinator.start_session()
        assert session_id is not None
        assert coordinator.is_active
        assert coordinator.error_message.startswith("Storage: Session creation failed")
        await coordinator.stop_session()

    @pytest.mark.asyncio
    async def test_start_clears_error_message(self, coordinator, machine, band):
        await coordinator.start_session()
        machine.on_peripheral_discovered(band)
        machine.on_connect_failed(band, "x")
        await coordinator.stop_session()
        await coordinator.start_session()
        assert coordinator.error_message is None
        await coordinator.stop_session()
