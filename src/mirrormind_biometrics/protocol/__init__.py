"""Wire protocol for the SmartBand sensor characteristic."""

from mirrormind_biometrics.protocol.codec import decode_reading, encode_reading, reading_to_record

__all__ = ["decode_reading", "encode_reading", "reading_to_record"]
