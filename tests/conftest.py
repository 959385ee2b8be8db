"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from mirrormind_biometrics.bluetooth.connection import ConnectionStateMachine
from mirrormind_biometrics.bluetooth.transport import Peripheral, RadioState, Transport
from mirrormind_biometrics.config import Settings
from mirrormind_biometrics.errors import StorageError, StorageErrorCode
from mirrormind_biometrics.models import Reading, SessionSummary
from mirrormind_biometrics.storage.database import create_engine_for
from mirrormind_biometrics.storage.repository import BiometricStore
from mirrormind_biometrics.streaming.events import EventBus

SERVICE = "12345678-1234-1234-1234-123456789abc"
CHARACTERISTIC = "87654321-4321-4321-4321-cba987654321"


# ── Doubles ───────────────────────────────────────────────────


class ScriptedTransport(Transport):
    """Records every dispatch; completions are delivered by the test."""

    name = "scripted"

    def __init__(self, radio: RadioState = RadioState.POWERED_ON) -> None:
        super().__init__()
        self.radio = radio
        self.calls: list[tuple[Any, ...]] = []
        self.closed = False

    @property
    def radio_state(self) -> RadioState:
        return self.radio

    def start_scan(self, service_uuids: list[str]) -> None:
        self.calls.append(("start_scan", tuple(service_uuids)))

    def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))

    def connect(self, peripheral: Peripheral) -> None:
        self.calls.append(("connect", peripheral.identifier))

    def cancel_connection(self, peripheral: Peripheral) -> None:
        self.calls.append(("cancel_connection", peripheral.identifier))

    def discover_services(self, peripheral: Peripheral, service_uuids: list[str]) -> None:
        self.calls.append(("discover_services", peripheral.identifier))

    def discover_characteristics(
        self, peripheral: Peripheral, service_uuid: str, characteristic_uuids: list[str]
    ) -> None:
        self.calls.append(("discover_characteristics", peripheral.identifier))

    def set_notify(self, peripheral: Peripheral, characteristic_uuid: str, enabled: bool) -> None:
        self.calls.append(("set_notify", peripheral.identifier, enabled))

    async def close(self) -> None:
        self.closed = True

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class RecordingStore:
    """In-memory persistence backend that remembers every call."""

    def __init__(self) -> None:
        self.batches: list[list[Reading]] = []
        self.started: list[str] = []
        self.ended: list[tuple[str, SessionSummary | None]] = []
        self.fail_batches = False
        self.fail_sessions = False
        self._last_error: StorageError | None = None

    @property
    def last_error(self) -> StorageError | None:
        return self._last_error

    async def start_session(self, user_id: str, device_info: dict[str, Any] | None = None) -> str:
        session_id = f"session_test_{len(self.started) + 1}"
        self.started.append(user_id)
        self._last_error = (
            StorageError(StorageErrorCode.SESSION_CREATION_FAILED, "offline")
            if self.fail_sessions else None
        )
        return session_id

    async def store_batch(self, readings: list[Reading]) -> None:
        if self.fail_batches:
            self._last_error = StorageError(StorageErrorCode.BATCH_UPLOAD_FAILED, "disk full")
            return
        self._last_error = None
        self.batches.append(list(readings))

    async def end_session(self, session_id: str, summary: SessionSummary | None) -> None:
        self._last_error = None
        self.ended.append((session_id, summary))


# ── Helpers ───────────────────────────────────────────────────


def make_reading(
    heart_rate: float = 72.0,
    *,
    temperature: float = 36.5,
    infrared_value: int = 85_432,
    contact: bool = True,
    valid: bool = True,
    timestamp: int = 123_456_789,
) -> Reading:
    return Reading(
        heart_rate=heart_rate,
        temperature=temperature,
        raw_temperature=34.2,
        infrared_value=infrared_value,
        contact_detected=contact,
        heart_rate_valid=valid,
        device_timestamp=timestamp,
    )


def drive_to_subscribed(machine: ConnectionStateMachine, peripheral: Peripheral) -> None:
    """Walk the full handshake by hand."""
    machine.start_scan()
    machine.on_peripheral_discovered(peripheral)
    machine.on_connected(peripheral)
    machine.on_services_discovered(peripheral, [SERVICE], None)
    machine.on_characteristics_discovered(peripheral, SERVICE, [CHARACTERISTIC], None)
    machine.on_notification_state_changed(peripheral, CHARACTERISTIC, True, None)


# ── Fixtures ──────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        scan_timeout_seconds=0.05,
        connect_timeout_seconds=0.05,
        reconnect_interval_seconds=0.05,
        reconnect_after_disconnect_seconds=0.02,
        radio_ready_delay_seconds=0.01,
        drain_interval_seconds=None,
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
def band() -> Peripheral:
    return Peripheral(identifier="AA:BB:CC:DD:EE:01", name="MirrorMind-SmartBand", rssi=-60)


@pytest.fixture
def other_device() -> Peripheral:
    return Peripheral(identifier="AA:BB:CC:DD:EE:99", name="Kettle", rssi=-80)


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def machine(transport: ScriptedTransport, bus: EventBus, settings: Settings) -> ConnectionStateMachine:
    return ConnectionStateMachine(transport, bus=bus, settings=settings)


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def sample_reading() -> Reading:
    return make_reading()


@pytest_asyncio.fixture
async def memory_store(settings: Settings):
    store = BiometricStore(create_engine_for(settings.resolved_database_url), settings=settings)
    await store.init()
    yield store
    await store.close()
