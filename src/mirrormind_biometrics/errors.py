"""Error taxonomy for the ingestion pipeline.

None of these cross the session boundary: the connection state machine and
the persistence store record them in a last-error slot (overwritten, never
queued) and publish them for observers.
"""

from __future__ import annotations

from enum import Enum


# ── Decoding ──────────────────────────────────────────────────


class DecodeError(Exception):
    """Base class for payload decoding failures."""


class MalformedPayloadError(DecodeError):
    """A notification payload failed structural or type validation."""

    def __init__(self, diagnostic: str, payload: bytes | str = b"") -> None:
        super().__init__(f"Malformed payload: {diagnostic}")
        self.diagnostic = diagnostic
        self.payload = payload


# ── Bluetooth ─────────────────────────────────────────────────


class BluetoothErrorCode(str, Enum):
    # environmental
    BLUETOOTH_NOT_AVAILABLE = "bluetooth_not_available"
    BLUETOOTH_POWERED_OFF = "bluetooth_powered_off"
    BLUETOOTH_UNAUTHORIZED = "bluetooth_unauthorized"
    BLUETOOTH_UNSUPPORTED = "bluetooth_unsupported"
    # transient, auto-reconnect eligible
    DEVICE_NOT_FOUND = "device_not_found"
    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTION_FAILED = "connection_failed"
    CONNECTION_LOST = "connection_lost"
    # handshake
    SERVICE_DISCOVERY_FAILED = "service_discovery_failed"
    SERVICE_NOT_FOUND = "service_not_found"
    CHARACTERISTIC_DISCOVERY_FAILED = "characteristic_discovery_failed"
    CHARACTERISTIC_NOT_FOUND = "characteristic_not_found"
    NOTIFICATION_SETUP_FAILED = "notification_setup_failed"
    # data
    DATA_PARSING_FAILED = "data_parsing_failed"

    @property
    def is_environmental(self) -> bool:
        return self in _ENVIRONMENTAL

    @property
    def is_transient(self) -> bool:
        return self in _TRANSIENT

    @property
    def is_handshake(self) -> bool:
        return self in _HANDSHAKE


_ENVIRONMENTAL = frozenset({
    BluetoothErrorCode.BLUETOOTH_NOT_AVAILABLE,
    BluetoothErrorCode.BLUETOOTH_POWERED_OFF,
    BluetoothErrorCode.BLUETOOTH_UNAUTHORIZED,
    BluetoothErrorCode.BLUETOOTH_UNSUPPORTED,
})

_TRANSIENT = frozenset({
    BluetoothErrorCode.DEVICE_NOT_FOUND,
    BluetoothErrorCode.CONNECTION_TIMEOUT,
    BluetoothErrorCode.CONNECTION_FAILED,
    BluetoothErrorCode.CONNECTION_LOST,
})

_HANDSHAKE = frozenset({
    BluetoothErrorCode.SERVICE_DISCOVERY_FAILED,
    BluetoothErrorCode.SERVICE_NOT_FOUND,
    BluetoothErrorCode.CHARACTERISTIC_DISCOVERY_FAILED,
    BluetoothErrorCode.CHARACTERISTIC_NOT_FOUND,
    BluetoothErrorCode.NOTIFICATION_SETUP_FAILED,
})

_BLUETOOTH_MESSAGES: dict[BluetoothErrorCode, str] = {
    BluetoothErrorCode.BLUETOOTH_NOT_AVAILABLE: "Bluetooth is not available",
    BluetoothErrorCode.BLUETOOTH_POWERED_OFF: "Bluetooth is turned off",
    BluetoothErrorCode.BLUETOOTH_UNAUTHORIZED: "Bluetooth access not authorized",
    BluetoothErrorCode.BLUETOOTH_UNSUPPORTED: "Bluetooth is not supported on this device",
    BluetoothErrorCode.DEVICE_NOT_FOUND: "SmartBand device not found",
    BluetoothErrorCode.CONNECTION_TIMEOUT: "Connection timeout",
    BluetoothErrorCode.CONNECTION_FAILED: "Connection failed",
    BluetoothErrorCode.CONNECTION_LOST: "Connection lost",
    BluetoothErrorCode.SERVICE_DISCOVERY_FAILED: "Failed to discover services",
    BluetoothErrorCode.SERVICE_NOT_FOUND: "SmartBand service not found",
    BluetoothErrorCode.CHARACTERISTIC_DISCOVERY_FAILED: "Failed to discover characteristics",
    BluetoothErrorCode.CHARACTERISTIC_NOT_FOUND: "SmartBand characteristic not found",
    BluetoothErrorCode.NOTIFICATION_SETUP_FAILED: "Failed to setup notifications",
    BluetoothErrorCode.DATA_PARSING_FAILED: "Failed to parse received data",
}


class BluetoothError(Exception):
    """A transport or handshake failure, identified by :class:`BluetoothErrorCode`."""

    def __init__(self, code: BluetoothErrorCode, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        base = _BLUETOOTH_MESSAGES[self.code]
        return f"{base}: {self.detail}" if self.detail else base

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BluetoothError):
            return NotImplemented
        return self.code == other.code and self.detail == other.detail

    def __hash__(self) -> int:
        return hash((self.code, self.detail))

    def __repr__(self) -> str:
        return f"BluetoothError({self.code.value!r}, {self.detail!r})"


# ── Storage ───────────────────────────────────────────────────


class StorageErrorCode(str, Enum):
    UPLOAD_FAILED = "upload_failed"
    BATCH_UPLOAD_FAILED = "batch_upload_failed"
    SESSION_CREATION_FAILED = "session_creation_failed"
    SESSION_UPDATE_FAILED = "session_update_failed"
    DATA_PARSING_FAILED = "data_parsing_failed"
    STORAGE_ERROR = "storage_error"


_STORAGE_MESSAGES: dict[StorageErrorCode, str] = {
    StorageErrorCode.UPLOAD_FAILED: "Upload failed",
    StorageErrorCode.BATCH_UPLOAD_FAILED: "Batch upload failed",
    StorageErrorCode.SESSION_CREATION_FAILED: "Session creation failed",
    StorageErrorCode.SESSION_UPDATE_FAILED: "Session update failed",
    StorageErrorCode.DATA_PARSING_FAILED: "Data parsing failed",
    StorageErrorCode.STORAGE_ERROR: "Storage error",
}


class StorageError(Exception):
    """A persistence failure reported through the store's own error channel."""

    def __init__(self, code: StorageErrorCode, detail: str) -> None:
        self.code = code
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return f"{_STORAGE_MESSAGES[self.code]}: {self.detail}"

    def __repr__(self) -> str:
        return f"StorageError({self.code.value!r}, {self.detail!r})"
