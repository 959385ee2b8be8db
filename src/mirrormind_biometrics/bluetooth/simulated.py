"""Radio-free SmartBand for demos and local development.

The simulated band advertises once per scan, completes the GATT handshake
after short delays and streams encoded readings.  Roughly 5% of samples
have no finger contact and another 5% are still calculating the heart rate.
"""

from __future__ import annotations

import asyncio
import random
import time

import structlog

from mirrormind_biometrics.bluetooth.transport import Peripheral, RadioState, Transport
from mirrormind_biometrics.config import Settings, get_settings
from mirrormind_biometrics.models import Reading
from mirrormind_biometrics.protocol.codec import encode_reading

logger = structlog.get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── Sample generators ─────────────────────────────────────────


def generate_sequence(
    count: int = 10,
    *,
    base_heart_rate: float = 72.0,
    base_temperature: float = 36.5,
    variation: float = 10.0,
    interval_ms: int = 2000,
    rng: random.Random | None = None,
) -> list[Reading]:
    """Realistic valid readings spaced *interval_ms* apart on the device clock."""
    rng = rng or random.Random()
    start = _now_ms()
    return [
        Reading(
            heart_rate=max(40.0, base_heart_rate + rng.uniform(-variation, variation)),
            temperature=max(36.0, min(37.5, base_temperature + rng.uniform(-0.5, 0.5))),
            raw_temperature=rng.uniform(33.0, 36.0),
            infrared_value=rng.randint(80_000, 150_000),
            contact_detected=True,
            heart_rate_valid=True,
            device_timestamp=start + i * interval_ms,
        )
        for i in range(count)
    ]


def no_finger_reading(rng: random.Random | None = None) -> Reading:
    rng = rng or random.Random()
    return Reading(
        heart_rate=0.0,
        temperature=rng.uniform(35.0, 36.0),
        raw_temperature=rng.uniform(32.0, 34.0),
        infrared_value=rng.randint(20_000, 45_000),
        contact_detected=False,
        heart_rate_valid=False,
        device_timestamp=_now_ms(),
    )


def calculating_reading(rng: random.Random | None = None) -> Reading:
    rng = rng or random.Random()
    return Reading(
        heart_rate=0.0,
        temperature=rng.uniform(36.0, 37.0),
        raw_temperature=rng.uniform(33.5, 35.5),
        infrared_value=rng.randint(75_000, 120_000),
        contact_detected=True,
        heart_rate_valid=False,
        device_timestamp=_now_ms(),
    )


# ── Transport ─────────────────────────────────────────────────


class SimulatedTransport(Transport):
    """Transport that pretends to be a single SmartBand in range."""

    name = "simulated"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        discovery_delay: float = 2.0,
        connect_delay: float = 1.0,
        sample_interval: float = 2.0,
        seed: int | None = None,
    ) -> None:
        super().__init__()
        settings = settings or get_settings()
        self._rng = random.Random(seed)
        self._discovery_delay = discovery_delay
        self._connect_delay = connect_delay
        self._sample_interval = sample_interval
        self._service_uuid = settings.service_uuid
        self._characteristic_uuid = settings.characteristic_uuid
        self.peripheral = Peripheral(identifier="SIM-0001", name=settings.device_name, rssi=-58)
        self._timers: list[asyncio.TimerHandle] = []
        self._stream: asyncio.Task | None = None
        self._connected = False
        self.samples_sent = 0

    @property
    def radio_state(self) -> RadioState:
        return RadioState.POWERED_ON

    def start_scan(self, service_uuids: list[str]) -> None:
        self._later(self._discovery_delay, self._emit, "on_peripheral_discovered", self.peripheral)

    def stop_scan(self) -> None:
        self._cancel_timers()

    def connect(self, peripheral: Peripheral) -> None:
        self._later(self._connect_delay, self._complete_connect, peripheral)

    def cancel_connection(self, peripheral: Peripheral) -> None:
        self._cancel_timers()
        self._stop_stream()
        if self._connected:
            self._connected = False
            self._emit("on_disconnected", peripheral, None)

    def discover_services(self, peripheral: Peripheral, service_uuids: list[str]) -> None:
        self._emit("on_services_discovered", peripheral, [self._service_uuid], None)

    def discover_characteristics(
        self, peripheral: Peripheral, service_uuid: str, characteristic_uuids: list[str]
    ) -> None:
        self._emit(
            "on_characteristics_discovered", peripheral, service_uuid, [self._characteristic_uuid], None,
        )

    def set_notify(self, peripheral: Peripheral, characteristic_uuid: str, enabled: bool) -> None:
        self._stop_stream()
        if enabled:
            self._stream = asyncio.get_running_loop().create_task(
                self._stream_samples(peripheral, characteristic_uuid)
            )
        self._emit("on_notification_state_changed", peripheral, characteristic_uuid, enabled, None)

    async def close(self) -> None:
        self._cancel_timers()
        self._stop_stream()
        self._connected = False

    # ── Simulation ────────────────────────────────────────────

    def _complete_connect(self, peripheral: Peripheral) -> None:
        self._connected = True
        self._emit("on_connected", peripheral)

    def next_reading(self, sequence: list[Reading]) -> Reading:
        roll = self._rng.randint(1, 100)
        if roll <= 5:
            return no_finger_reading(self._rng)
        if roll <= 10:
            return calculating_reading(self._rng)
        return sequence[self.samples_sent % len(sequence)]

    async def _stream_samples(self, peripheral: Peripheral, characteristic_uuid: str) -> None:
        sequence = generate_sequence(
            100,
            base_heart_rate=self._rng.uniform(65.0, 85.0),
            base_temperature=self._rng.uniform(36.2, 36.8),
            rng=self._rng,
        )
        while self._connected:
            await asyncio.sleep(self._sample_interval)
            reading = self.next_reading(sequence)
            self.samples_sent += 1
            self._emit("on_value", peripheral, characteristic_uuid, encode_reading(reading), None)

    def _later(self, delay: float, fn, *args) -> None:
        self._timers.append(asyncio.get_running_loop().call_later(delay, fn, *args))

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def _stop_stream(self) -> None:
        if self._stream is not None:
            self._stream.cancel()
            self._stream = None
        logger.debug("simulated.stream_stopped", samples_sent=self.samples_sent)
