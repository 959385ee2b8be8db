"""Connection state machine for a single SmartBand peripheral.

States
~~~~~~
``disconnected → scanning → connecting → connected → subscribed``

Any failure or explicit disconnect returns to ``disconnected``.  Handshake
failures after ``connected`` (service / characteristic discovery,
notification setup) leave the link degraded at ``connected`` so the caller
can retry.

Every transition runs on the asyncio loop thread: transport completions are
handed over by the transport, and timers are loop timers.  Each timer
captures the current *epoch*; scans, connection attempts and teardowns bump
it, so a timeout that fires after its operation has been superseded is a
no-op.
"""

from __future__ import annotations

import asyncio

import structlog

from mirrormind_biometrics.bluetooth.transport import Peripheral, RadioState, Transport
from mirrormind_biometrics.config import Settings, get_settings
from mirrormind_biometrics.errors import BluetoothError, BluetoothErrorCode, DecodeError
from mirrormind_biometrics.models import ConnectionState, Reading
from mirrormind_biometrics.protocol.codec import decode_reading
from mirrormind_biometrics.streaming.events import (
    ConnectionStateChanged,
    ErrorRaised,
    EventBus,
    ReadingReceived,
)

logger = structlog.get_logger(__name__)

_RADIO_ERRORS: dict[RadioState, BluetoothErrorCode] = {
    RadioState.POWERED_OFF: BluetoothErrorCode.BLUETOOTH_POWERED_OFF,
    RadioState.UNAUTHORIZED: BluetoothErrorCode.BLUETOOTH_UNAUTHORIZED,
    RadioState.UNSUPPORTED: BluetoothErrorCode.BLUETOOTH_UNSUPPORTED,
    RadioState.UNKNOWN: BluetoothErrorCode.BLUETOOTH_NOT_AVAILABLE,
}


def _same_uuid(a: str, b: str) -> bool:
    return a.lower() == b.lower()


class ConnectionStateMachine:
    """Drive discovery, connection and subscription for one SmartBand.

    Integration::

        machine = ConnectionStateMachine(BleakTransport(), bus=bus)
        machine.enable_auto_reconnect()
        machine.connect()
        ...
        machine.disconnect()
    """

    def __init__(
        self,
        transport: Transport,
        *,
        bus: EventBus | None = None,
        settings: Settings | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._transport = transport
        self._bus = bus or EventBus()

        self.device_name = settings.device_name
        self.service_uuid = settings.service_uuid
        self.characteristic_uuid = settings.characteristic_uuid
        self._scan_timeout = settings.scan_timeout_seconds
        self._connect_timeout = settings.connect_timeout_seconds
        self._reconnect_interval = settings.reconnect_interval_seconds
        self._reconnect_after_disconnect = settings.reconnect_after_disconnect_seconds
        self._radio_ready_delay = settings.radio_ready_delay_seconds

        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        self._loop = loop

        self._state = ConnectionState.DISCONNECTED
        self._scanning = False
        self._peripheral: Peripheral | None = None
        self._characteristic: str | None = None
        self._current_reading: Reading | None = None
        self._last_error: BluetoothError | None = None
        self._discovered: list[Peripheral] = []

        self._epoch = 0
        self._scan_timer: asyncio.TimerHandle | None = None
        self._connect_timer: asyncio.TimerHandle | None = None
        self._deferred_timer: asyncio.TimerHandle | None = None
        self._reconnect_timer: asyncio.TimerHandle | None = None

        transport.attach(self, loop)

    # ── Observable state ──────────────────────────────────────

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def current_reading(self) -> Reading | None:
        return self._current_reading

    @property
    def last_error(self) -> BluetoothError | None:
        return self._last_error

    @property
    def discovered_devices(self) -> list[Peripheral]:
        return list(self._discovered)

    @property
    def peripheral(self) -> Peripheral | None:
        return self._peripheral

    @property
    def characteristic(self) -> str | None:
        return self._characteristic

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def is_connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.SUBSCRIBED)

    @property
    def auto_reconnect_enabled(self) -> bool:
        return self._reconnect_timer is not None

    # ── Commands ──────────────────────────────────────────────

    def connect(self) -> None:
        """Connect request: reuse a discovered SmartBand or start scanning."""
        if self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.SUBSCRIBED,
        ) or self._scanning:
            logger.debug("connection.connect_ignored", state=self._state.value)
            return
        known = next((p for p in self._discovered if p.name == self.device_name), None)
        if known is not None:
            self.connect_to(known)
        else:
            self.start_scan()

    def start_scan(self) -> None:
        if self._transport.radio_state is not RadioState.POWERED_ON:
            self._report(BluetoothErrorCode.BLUETOOTH_NOT_AVAILABLE)
            return
        if self._scanning:
            logger.debug("connection.already_scanning")
            return
        if self._state is not ConnectionState.DISCONNECTED:
            logger.debug("connection.scan_ignored", state=self._state.value)
            return

        self._epoch += 1
        self._discovered.clear()
        self._scanning = True
        self._set_state(ConnectionState.SCANNING)
        self._transport.start_scan([self.service_uuid])
        self._scan_timer = self._schedule(self._scan_timeout, self._on_scan_timeout)
        logger.info("connection.scan_started", service=self.service_uuid, timeout=self._scan_timeout)

    def stop_scan(self) -> None:
        if not self._scanning:
            return
        self._halt_scan()
        if self._state is ConnectionState.SCANNING:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("connection.scan_stopped")

    def connect_to(self, peripheral: Peripheral) -> None:
        """Connect to *peripheral*, e.g. one picked from :attr:`discovered_devices`."""
        if self._transport.radio_state is not RadioState.POWERED_ON:
            self._halt_scan()
            self._report(BluetoothErrorCode.BLUETOOTH_NOT_AVAILABLE)
            if self._state is ConnectionState.SCANNING:
                self._set_state(ConnectionState.DISCONNECTED)
            return
        if self.is_connected or (
            self._state is ConnectionState.CONNECTING and self._is_current(peripheral)
        ):
            logger.debug("connection.connect_to_ignored", state=self._state.value)
            return

        self._halt_scan()
        self._cancel(self._connect_timer)
        if self._peripheral is not None:
            self._transport.cancel_connection(self._peripheral)
        self._epoch += 1
        self._peripheral = peripheral
        self._set_state(ConnectionState.CONNECTING)
        self._transport.connect(peripheral)
        self._connect_timer = self._schedule(self._connect_timeout, self._on_connect_timeout)
        logger.info(
            "connection.connecting",
            peripheral=peripheral.name or "unknown",
            identifier=peripheral.identifier,
            timeout=self._connect_timeout,
        )

    def disconnect(self) -> None:
        """Explicit disconnect; also stops auto-reconnect."""
        self.disable_auto_reconnect()
        self._teardown(cancel=True)
        logger.info("connection.disconnected")

    def toggle_connection(self) -> None:
        if self.is_connected:
            self.disconnect()
        else:
            self.connect()

    def clear_error(self) -> None:
        self._last_error = None

    # ── Auto-reconnect ────────────────────────────────────────

    def enable_auto_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            return
        self._reconnect_timer = self._get_loop().call_later(
            self._reconnect_interval, self._on_reconnect_tick,
        )
        logger.info("connection.auto_reconnect_enabled", interval=self._reconnect_interval)

    def disable_auto_reconnect(self) -> None:
        if self._reconnect_timer is None:
            return
        self._reconnect_timer.cancel()
        self._reconnect_timer = None
        logger.info("connection.auto_reconnect_disabled")

    def _on_reconnect_tick(self) -> None:
        self._reconnect_timer = self._get_loop().call_later(
            self._reconnect_interval, self._on_reconnect_tick,
        )
        if self._state is ConnectionState.DISCONNECTED and not self._scanning:
            logger.info("connection.auto_reconnect_attempt")
            self.connect()

    async def close(self) -> None:
        """Cancel every timer, drop the link and release the transport."""
        self.disconnect()
        await self._transport.close()

    # ── Transport delegate ────────────────────────────────────

    def on_radio_state_changed(self, state: RadioState) -> None:
        logger.info("connection.radio_state", radio=state.value)
        if state is RadioState.POWERED_ON:
            self._last_error = None
            if self._state is ConnectionState.DISCONNECTED:
                self._cancel_deferred()
                self._deferred_timer = self._schedule(self._radio_ready_delay, self._scan_if_idle)
            return
        if state is RadioState.RESETTING:
            self._report(BluetoothErrorCode.BLUETOOTH_NOT_AVAILABLE)
            return
        self._teardown(cancel=False)
        self._report(_RADIO_ERRORS[state])

    def on_peripheral_discovered(self, peripheral: Peripheral) -> None:
        if not self._scanning:
            return
        logger.debug(
            "connection.peripheral_discovered",
            peripheral=peripheral.name or "unknown",
            rssi=peripheral.rssi,
        )
        if all(p.identifier != peripheral.identifier for p in self._discovered):
            self._discovered.append(peripheral)
        if peripheral.name == self.device_name:
            self.connect_to(peripheral)

    def on_connected(self, peripheral: Peripheral) -> None:
        if self._state is not ConnectionState.CONNECTING or not self._is_current(peripheral):
            logger.warning("connection.stale_connect", identifier=peripheral.identifier)
            if not self._is_current(peripheral):
                self._transport.cancel_connection(peripheral)
            return
        self._cancel(self._connect_timer)
        self._connect_timer = None
        self._last_error = None
        self._set_state(ConnectionState.CONNECTED)
        logger.info("connection.connected", peripheral=peripheral.name or "unknown")
        self._transport.discover_services(peripheral, [self.service_uuid])

    def on_connect_failed(self, peripheral: Peripheral, reason: str) -> None:
        if not self._is_current(peripheral):
            return
        self._teardown(cancel=False)
        self._report(BluetoothErrorCode.CONNECTION_FAILED, reason or "Unknown error")

    def on_disconnected(self, peripheral: Peripheral, reason: str | None) -> None:
        if not self._is_current(peripheral):
            return
        self._teardown(cancel=False)
        if reason:
            self._report(BluetoothErrorCode.CONNECTION_LOST, reason)
        logger.info("connection.peripheral_disconnected", reason=reason)
        if self.auto_reconnect_enabled:
            self._deferred_timer = self._schedule(self._reconnect_after_disconnect, self.connect)

    def on_services_discovered(
        self, peripheral: Peripheral, services: list[str] | None, error: str | None
    ) -> None:
        if not self._on_live_link(peripheral):
            return
        if error:
            self._report(BluetoothErrorCode.SERVICE_DISCOVERY_FAILED, error)
            return
        if not services or not any(_same_uuid(s, self.service_uuid) for s in services):
            self._report(BluetoothErrorCode.SERVICE_NOT_FOUND)
            return
        logger.info("connection.service_found", services=len(services))
        self._transport.discover_characteristics(
            peripheral, self.service_uuid, [self.characteristic_uuid],
        )

    def on_characteristics_discovered(
        self,
        peripheral: Peripheral,
        service_uuid: str,
        characteristics: list[str] | None,
        error: str | None,
    ) -> None:
        if not self._on_live_link(peripheral):
            return
        if error:
            self._report(BluetoothErrorCode.CHARACTERISTIC_DISCOVERY_FAILED, error)
            return
        if not characteristics or not any(
            _same_uuid(c, self.characteristic_uuid) for c in characteristics
        ):
            self._report(BluetoothErrorCode.CHARACTERISTIC_NOT_FOUND)
            return
        logger.info("connection.characteristic_found", characteristics=len(characteristics))
        self._characteristic = self.characteristic_uuid
        self._transport.set_notify(peripheral, self.characteristic_uuid, True)

    def on_notification_state_changed(
        self, peripheral: Peripheral, characteristic_uuid: str, enabled: bool, error: str | None
    ) -> None:
        if not self._on_live_link(peripheral):
            return
        if error:
            self._report(BluetoothErrorCode.NOTIFICATION_SETUP_FAILED, error)
            return
        if enabled:
            self._set_state(ConnectionState.SUBSCRIBED)
            logger.info("connection.notifications_enabled", characteristic=characteristic_uuid)
        else:
            logger.warning("connection.notifications_disabled", characteristic=characteristic_uuid)

    def on_value(
        self, peripheral: Peripheral, characteristic_uuid: str, data: bytes | None, error: str | None
    ) -> None:
        if self._state is not ConnectionState.SUBSCRIBED or not self._is_current(peripheral):
            return
        if error:
            logger.warning("connection.value_error", error=error)
            return
        if data is None:
            logger.warning("connection.empty_notification")
            return
        try:
            reading = decode_reading(data)
        except DecodeError as exc:
            logger.warning("connection.decode_failed", error=str(exc))
            self._report(BluetoothErrorCode.DATA_PARSING_FAILED, str(exc))
            return

        self._current_reading = reading
        logger.debug(
            "connection.reading",
            heart_rate=reading.heart_rate_status,
            temperature=reading.formatted_temperature,
            quality=reading.sensor_quality.value,
        )
        self._bus.publish(ReadingReceived(reading))

    # ── Internals ─────────────────────────────────────────────

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
            self._transport.attach(self, self._loop)
        return self._loop

    def _schedule(self, delay: float, fn, *args) -> asyncio.TimerHandle:
        """Arm an epoch-guarded timer."""
        epoch = self._epoch

        def fire() -> None:
            if epoch != self._epoch:
                logger.debug("connection.stale_timer", callback=fn.__name__)
                return
            fn(*args)

        return self._get_loop().call_later(delay, fire)

    @staticmethod
    def _cancel(handle: asyncio.TimerHandle | None) -> None:
        if handle is not None:
            handle.cancel()

    def _cancel_deferred(self) -> None:
        self._cancel(self._deferred_timer)
        self._deferred_timer = None

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.info("connection.state_changed", previous=previous.value, current=state.value)
        self._bus.publish(ConnectionStateChanged(previous=previous, current=state))

    def _report(self, code: BluetoothErrorCode, detail: str | None = None) -> None:
        error = BluetoothError(code, detail)
        self._last_error = error
        logger.warning("connection.error", code=code.value, detail=detail)
        self._bus.publish(ErrorRaised(source="bluetooth", error=error))

    def _is_current(self, peripheral: Peripheral) -> bool:
        return self._peripheral is not None and self._peripheral.identifier == peripheral.identifier

    def _on_live_link(self, peripheral: Peripheral) -> bool:
        return self.is_connected and self._is_current(peripheral)

    def _halt_scan(self) -> None:
        """Stop the radio scan without touching the connection state."""
        self._cancel(self._scan_timer)
        self._scan_timer = None
        if self._scanning:
            self._transport.stop_scan()
            self._scanning = False

    def _teardown(self, *, cancel: bool) -> None:
        self._epoch += 1
        self._halt_scan()
        self._cancel(self._connect_timer)
        self._connect_timer = None
        self._cancel_deferred()
        if cancel and self._peripheral is not None:
            self._transport.cancel_connection(self._peripheral)
        self._peripheral = None
        self._characteristic = None
        self._current_reading = None
        self._set_state(ConnectionState.DISCONNECTED)

    def _on_scan_timeout(self) -> None:
        if self._scanning and self._state is ConnectionState.SCANNING:
            self.stop_scan()
            self._report(BluetoothErrorCode.DEVICE_NOT_FOUND)

    def _on_connect_timeout(self) -> None:
        if self._state is ConnectionState.CONNECTING:
            self._teardown(cancel=True)
            self._report(BluetoothErrorCode.CONNECTION_TIMEOUT)

    def _scan_if_idle(self) -> None:
        if self._state is ConnectionState.DISCONNECTED and not self._scanning:
            self.start_scan()
