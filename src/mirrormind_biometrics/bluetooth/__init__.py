"""Bluetooth sub-package — SmartBand connection lifecycle and transports."""

from mirrormind_biometrics.bluetooth.connection import ConnectionStateMachine
from mirrormind_biometrics.bluetooth.transport import (
    Peripheral,
    RadioState,
    Transport,
    TransportDelegate,
)

__all__ = [
    "ConnectionStateMachine",
    "Peripheral",
    "RadioState",
    "Transport",
    "TransportDelegate",
]
