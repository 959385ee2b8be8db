"""Tests for the in-process event bus."""

from mirrormind_biometrics.errors import BluetoothError, BluetoothErrorCode, StorageError, StorageErrorCode
from mirrormind_biometrics.models import ConnectionState
from mirrormind_biometrics.streaming.events import (
    ConnectionStateChanged,
    ErrorRaised,
    EventBus,
    ReadingReceived,
)

from conftest import make_reading


class TestEventBus:
    def test_delivery_in_registration_order(self):
        bus = EventBus()
        order = []
        bus.subscribe(ReadingReceived, lambda e: order.append("first"))
        bus.subscribe(ReadingReceived, lambda e: order.append("second"))
        bus.publish(ReadingReceived(make_reading()))
        assert order == ["first", "second"]

    def test_only_matching_type_is_delivered(self):
        bus = EventBus()
        readings = []
        bus.subscribe(ReadingReceived, readings.append)
        bus.publish(ConnectionStateChanged(ConnectionState.DISCONNECTED, ConnectionState.SCANNING))
        assert readings == []
        assert bus.published_total == 1

    def test_failing_handler_is_isolated(self):
        bus = EventBus()
        delivered = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(ReadingReceived, broken)
        bus.subscribe(ReadingReceived, delivered.append)
        bus.publish(ReadingReceived(make_reading()))
        assert len(delivered) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(ReadingReceived, seen.append)
        assert bus.subscriber_count(ReadingReceived) == 1
        unsubscribe()
        unsubscribe()
        bus.publish(ReadingReceived(make_reading()))
        assert seen == []
        assert bus.subscriber_count(ReadingReceived) == 0


class TestErrorEvents:
    def test_message_uses_error_text(self):
        event = ErrorRaised("bluetooth", BluetoothError(BluetoothErrorCode.CONNECTION_LOST, "Link lost"))
        assert event.message == "Connection lost: Link lost"

    def test_storage_message(self):
        event = ErrorRaised("storage", StorageError(StorageErrorCode.BATCH_UPLOAD_FAILED, "disk full"))
        assert event.message == "Batch upload failed: disk full"

    def test_error_classification(self):
        assert BluetoothErrorCode.BLUETOOTH_POWERED_OFF.is_environmental
        assert BluetoothErrorCode.SERVICE_NOT_FOUND.is_handshake
        assert not BluetoothErrorCode.DEVICE_NOT_FOUND.is_handshake
