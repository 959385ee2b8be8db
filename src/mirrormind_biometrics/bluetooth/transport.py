"""Transport seam between the connection state machine and a Bluetooth stack.

Architecture
~~~~~~~~~~~~
* **Transport** — narrow capability interface.  Every call only *dispatches*
  work and returns immediately.
* **TransportDelegate** — receives the asynchronous completions.  The
  :class:`~mirrormind_biometrics.bluetooth.connection.ConnectionStateMachine`
  is the delegate in production.
* Implementations hand each completion to the owning asyncio loop with
  :meth:`Transport._emit`, so the delegate only ever runs on the loop thread.

Adding a transport
~~~~~~~~~~~~~~~~~~
1. Subclass ``Transport`` and implement the dispatch methods.
2. Report results through ``self._emit("on_...", ...)``.
3. Report radio availability changes through ``on_radio_state_changed``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class RadioState(str, Enum):
    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


@dataclass(frozen=True, slots=True)
class Peripheral:
    """A discovered remote device."""

    identifier: str
    name: str | None = None
    rssi: int | None = None


class TransportDelegate(Protocol):
    def on_radio_state_changed(self, state: RadioState) -> None: ...

    def on_peripheral_discovered(self, peripheral: Peripheral) -> None: ...

    def on_connected(self, peripheral: Peripheral) -> None: ...

    def on_connect_failed(self, peripheral: Peripheral, reason: str) -> None: ...

    def on_disconnected(self, peripheral: Peripheral, reason: str | None) -> None: ...

    def on_services_discovered(
        self, peripheral: Peripheral, services: list[str] | None, error: str | None
    ) -> None: ...

    def on_characteristics_discovered(
        self,
        peripheral: Peripheral,
        service_uuid: str,
        characteristics: list[str] | None,
        error: str | None,
    ) -> None: ...

    def on_notification_state_changed(
        self, peripheral: Peripheral, characteristic_uuid: str, enabled: bool, error: str | None
    ) -> None: ...

    def on_value(
        self, peripheral: Peripheral, characteristic_uuid: str, data: bytes | None, error: str | None
    ) -> None: ...


class Transport(ABC):
    """Contract every Bluetooth binding must implement."""

    name: str = "base"

    def __init__(self) -> None:
        self.delegate: TransportDelegate | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach(self, delegate: TransportDelegate, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Bind the delegate and the loop its callbacks must run on."""
        self.delegate = delegate
        self._loop = loop

    @property
    @abstractmethod
    def radio_state(self) -> RadioState:
        """Current radio availability."""

    @abstractmethod
    def start_scan(self, service_uuids: list[str]) -> None: ...

    @abstractmethod
    def stop_scan(self) -> None: ...

    @abstractmethod
    def connect(self, peripheral: Peripheral) -> None: ...

    @abstractmethod
    def cancel_connection(self, peripheral: Peripheral) -> None: ...

    @abstractmethod
    def discover_services(self, peripheral: Peripheral, service_uuids: list[str]) -> None: ...

    @abstractmethod
    def discover_characteristics(
        self, peripheral: Peripheral, service_uuid: str, characteristic_uuids: list[str]
    ) -> None: ...

    @abstractmethod
    def set_notify(self, peripheral: Peripheral, characteristic_uuid: str, enabled: bool) -> None: ...

    async def close(self) -> None:
        """Release any resources held by the transport."""

    # ── Delegate hand-off ─────────────────────────────────────

    def _emit(self, method: str, *args: Any) -> None:
        """Deliver ``delegate.<method>(*args)`` on the owning loop.

        Safe to call from any thread; callbacks from a foreign thread are
        queued with ``call_soon_threadsafe``.
        """
        delegate = self.delegate
        if delegate is None:
            logger.debug("transport.event_without_delegate", transport=self.name, event=method)
            return
        callback = getattr(delegate, method)
        loop = self._loop
        if loop is None or loop.is_closed():
            callback(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.call_soon(callback, *args)
        else:
            loop.call_soon_threadsafe(callback, *args)
