"""Transport implementation over *bleak*.

Bleak exposes awaitables; this adapter turns each dispatch call into a
background task and reports the outcome to the delegate as an event, which
keeps the state machine independent of bleak's calling conventions.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import structlog
from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from mirrormind_biometrics.bluetooth.transport import Peripheral, RadioState, Transport

logger = structlog.get_logger(__name__)

_TRANSPORT_ERRORS = (BleakError, OSError, asyncio.TimeoutError)


class BleakTransport(Transport):
    """Central-role BLE transport backed by the host Bluetooth adapter."""

    name = "bleak"

    def __init__(self, *, adapter: str | None = None, probe_interval: float = 5.0) -> None:
        super().__init__()
        self._adapter = adapter
        self._probe_interval = probe_interval
        self._probe_task: asyncio.Task | None = None
        self._radio = RadioState.POWERED_ON
        self._scanner: BleakScanner | None = None
        self._devices: dict[str, BLEDevice] = {}
        self._clients: dict[str, BleakClient] = {}
        self._connect_tasks: dict[str, asyncio.Task] = {}
        self._closing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def radio_state(self) -> RadioState:
        return self._radio

    # ── Scanning ──────────────────────────────────────────────

    def start_scan(self, service_uuids: list[str]) -> None:
        self._spawn(self._start_scan(service_uuids))

    def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._spawn(self._stop_scanner(scanner))

    async def _start_scan(self, service_uuids: list[str]) -> None:
        kwargs: dict[str, Any] = {"detection_callback": self._on_detection, "service_uuids": service_uuids}
        if self._adapter:
            kwargs["adapter"] = self._adapter
        scanner = BleakScanner(**kwargs)
        try:
            await scanner.start()
        except _TRANSPORT_ERRORS as exc:
            logger.error("bleak.scan_failed", error=str(exc))
            self._set_radio(RadioState.UNKNOWN)
            if self._probe_task is None or self._probe_task.done():
                self._probe_task = self._spawn(self._probe_radio())
            return
        self._scanner = scanner
        self._set_radio(RadioState.POWERED_ON)

    async def _probe_radio(self) -> None:
        """Retry a short scan until the adapter answers again."""
        while self._radio is not RadioState.POWERED_ON:
            await asyncio.sleep(self._probe_interval)
            try:
                await BleakScanner.discover(timeout=1.0)
            except _TRANSPORT_ERRORS:
                continue
            self._set_radio(RadioState.POWERED_ON)

    async def _stop_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.stop()
        except _TRANSPORT_ERRORS as exc:
            logger.warning("bleak.scan_stop_failed", error=str(exc))

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData) -> None:
        self._devices[device.address] = device
        peripheral = Peripheral(
            identifier=device.address,
            name=device.name or adv.local_name,
            rssi=adv.rssi,
        )
        self._emit("on_peripheral_discovered", peripheral)

    # ── Connection ────────────────────────────────────────────

    def connect(self, peripheral: Peripheral) -> None:
        self._closing.discard(peripheral.identifier)
        task = self._spawn(self._connect(peripheral))
        self._connect_tasks[peripheral.identifier] = task

    def cancel_connection(self, peripheral: Peripheral) -> None:
        self._closing.add(peripheral.identifier)
        task = self._connect_tasks.pop(peripheral.identifier, None)
        if task is not None and not task.done():
            task.cancel()
        client = self._clients.pop(peripheral.identifier, None)
        if client is not None:
            self._spawn(self._disconnect(client))

    async def _connect(self, peripheral: Peripheral) -> None:
        target = self._devices.get(peripheral.identifier, peripheral.identifier)

        def on_disconnect(_client: BleakClient) -> None:
            self._clients.pop(peripheral.identifier, None)
            reason = None if peripheral.identifier in self._closing else "Link lost"
            self._emit("on_disconnected", peripheral, reason)

        kwargs: dict[str, Any] = {"disconnected_callback": on_disconnect}
        if self._adapter:
            kwargs["adapter"] = self._adapter
        client = BleakClient(target, **kwargs)
        self._clients[peripheral.identifier] = client
        try:
            await client.connect()
        except _TRANSPORT_ERRORS as exc:
            self._clients.pop(peripheral.identifier, None)
            self._emit("on_connect_failed", peripheral, str(exc) or type(exc).__name__)
            return
        finally:
            self._connect_tasks.pop(peripheral.identifier, None)
        self._emit("on_connected", peripheral)

    async def _disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except _TRANSPORT_ERRORS as exc:
            logger.warning("bleak.disconnect_failed", error=str(exc))

    # ── GATT ──────────────────────────────────────────────────

    def discover_services(self, peripheral: Peripheral, service_uuids: list[str]) -> None:
        client = self._clients.get(peripheral.identifier)
        if client is None:
            self._emit("on_services_discovered", peripheral, None, "not connected")
            return
        try:
            services = [service.uuid for service in client.services]
        except BleakError as exc:
            self._emit("on_services_discovered", peripheral, None, str(exc))
            return
        self._emit("on_services_discovered", peripheral, services, None)

    def discover_characteristics(
        self, peripheral: Peripheral, service_uuid: str, characteristic_uuids: list[str]
    ) -> None:
        client = self._clients.get(peripheral.identifier)
        if client is None:
            self._emit("on_characteristics_discovered", peripheral, service_uuid, None, "not connected")
            return
        try:
            service = client.services.get_service(service_uuid)
        except BleakError as exc:
            self._emit("on_characteristics_discovered", peripheral, service_uuid, None, str(exc))
            return
        characteristics = [c.uuid for c in service.characteristics] if service else None
        self._emit("on_characteristics_discovered", peripheral, service_uuid, characteristics, None)

    def set_notify(self, peripheral: Peripheral, characteristic_uuid: str, enabled: bool) -> None:
        self._spawn(self._set_notify(peripheral, characteristic_uuid, enabled))

    async def _set_notify(self, peripheral: Peripheral, characteristic_uuid: str, enabled: bool) -> None:
        client = self._clients.get(peripheral.identifier)
        if client is None:
            self._emit("on_notification_state_changed", peripheral, characteristic_uuid, False, "not connected")
            return

        def on_notify(_sender: Any, data: bytearray) -> None:
            self._emit("on_value", peripheral, characteristic_uuid, bytes(data), None)

        try:
            if enabled:
                await client.start_notify(characteristic_uuid, on_notify)
            else:
                await client.stop_notify(characteristic_uuid)
        except _TRANSPORT_ERRORS as exc:
            self._emit("on_notification_state_changed", peripheral, characteristic_uuid, False, str(exc))
            return
        self._emit("on_notification_state_changed", peripheral, characteristic_uuid, enabled, None)

    # ── Lifecycle ─────────────────────────────────────────────

    async def close(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await self._stop_scanner(scanner)
        for identifier in list(self._clients):
            self._closing.add(identifier)
            await self._disconnect(self._clients.pop(identifier))
        if self._probe_task is not None:
            self._probe_task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _set_radio(self, state: RadioState) -> None:
        if state is self._radio:
            return
        self._radio = state
        self._emit("on_radio_state_changed", state)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("bleak.task_failed", error=str(exc), error_type=type(exc).__name__)
