"""SmartBand wire codec.

The band notifies one UTF-8 JSON object per characteristic update::

    {"heartRate": 72.0, "temperature": 36.5, "rawTemperature": 34.2,
     "irValue": 85432, "fingerDetected": true, "validHeartRate": true,
     "timestamp": 123456789}

Decoding validates structure and types only; no range checks are applied.
"""

from __future__ import annotations

import json
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from mirrormind_biometrics.errors import MalformedPayloadError
from mirrormind_biometrics.models import Reading, utcnow

Int64 = Annotated[int, Field(ge=-(2**63), le=2**63 - 1)]


class _WirePayload(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    heart_rate: float = Field(validation_alias="heartRate")
    temperature: float = Field(validation_alias="temperature")
    raw_temperature: float = Field(validation_alias="rawTemperature")
    infrared_value: Int64 = Field(validation_alias=AliasChoices("irValue", "infraredValue"))
    contact_detected: bool = Field(validation_alias=AliasChoices("fingerDetected", "contactDetected"))
    heart_rate_valid: bool = Field(validation_alias=AliasChoices("validHeartRate", "heartRateValid"))
    device_timestamp: Int64 = Field(validation_alias="timestamp")


def _diagnostic(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def decode_reading(payload: bytes | bytearray | str) -> Reading:
    """Decode one notification payload into a :class:`Reading`.

    Raises
    ------
    MalformedPayloadError
        On invalid UTF-8, invalid JSON, a non-object document, a missing
        key or a wrongly typed value.
    """
    if isinstance(payload, (bytes, bytearray)):
        raw = bytes(payload)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayloadError(f"invalid UTF-8: {exc}", raw) from exc
    else:
        raw = payload
        text = payload

    try:
        wire = _WirePayload.model_validate_json(text)
    except ValidationError as exc:
        raise MalformedPayloadError(_diagnostic(exc), raw) from exc

    return Reading(**wire.model_dump(), received_at=utcnow())


def encode_reading(reading: Reading) -> bytes:
    """Serialise a reading to its wire form (``received_at`` is not transmitted)."""
    return json.dumps(
        {
            "heartRate": reading.heart_rate,
            "temperature": reading.temperature,
            "rawTemperature": reading.raw_temperature,
            "irValue": reading.infrared_value,
            "fingerDetected": reading.contact_detected,
            "validHeartRate": reading.heart_rate_valid,
            "timestamp": reading.device_timestamp,
        },
        separators=(",", ":"),
    ).encode("utf-8")


def reading_to_record(reading: Reading) -> dict[str, Any]:
    """Flat, JSON-ready representation including the derived classifications."""
    return {
        **json.loads(encode_reading(reading)),
        "receivedAt": int(reading.received_at.timestamp() * 1000),
        "heartRateCategory": reading.heart_rate_category.value,
        "temperatureStatus": reading.temperature_status.value,
        "sensorQuality": reading.sensor_quality.value,
        "heartRateStatus": reading.heart_rate_status,
    }
