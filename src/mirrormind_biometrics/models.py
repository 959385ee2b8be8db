"""Shared Pydantic models used across the ingestion pipeline."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Enums ─────────────────────────────────────────────────────


class HeartRateCategory(str, Enum):
    """Heart-rate band based on general resting guidelines."""

    UNKNOWN = "unknown"
    LOW = "low"
    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH = "high"

    @property
    def display_label(self) -> str:
        return self.value.capitalize()


class TemperatureStatus(str, Enum):
    """Body-temperature band (°C)."""

    UNKNOWN = "unknown"
    LOW = "low"
    NORMAL = "normal"
    ELEVATED = "elevated"

    @property
    def display_label(self) -> str:
        return "Below Normal" if self is TemperatureStatus.LOW else self.value.capitalize()


class SensorQuality(str, Enum):
    """Optical sensor contact quality, derived from the infrared amplitude."""

    NO_CONTACT = "no_contact"
    POOR_CONTACT = "poor_contact"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"

    @property
    def display_label(self) -> str:
        return self.value.replace("_", " ").title()


class ConnectionState(str, Enum):
    """Lifecycle of the single logical SmartBand connection."""

    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"

    @property
    def display_label(self) -> str:
        if self is ConnectionState.SUBSCRIBED:
            return "Receiving Data"
        return self.value.capitalize()

    @property
    def status(self) -> ConnectionStatus:
        """Coarse projection used by session observers."""
        if self is ConnectionState.SUBSCRIBED:
            return ConnectionStatus.CONNECTED
        return ConnectionStatus(self.value)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class EmotionCategory(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    UNKNOWN = "unknown"


_EMOTION_CATEGORIES: dict[str, EmotionCategory] = {
    **dict.fromkeys(("happy", "joy", "happiness", "alegre", "feliz"), EmotionCategory.POSITIVE),
    **dict.fromkeys(("sad", "sadness", "triste", "tristeza"), EmotionCategory.NEGATIVE),
    **dict.fromkeys(("angry", "anger", "enojado", "ira"), EmotionCategory.NEGATIVE),
    **dict.fromkeys(("fear", "afraid", "miedo", "asustado"), EmotionCategory.NEGATIVE),
    **dict.fromkeys(("disgust", "disgusted", "asco", "disgusto"), EmotionCategory.NEGATIVE),
    **dict.fromkeys(("surprised", "surprise", "sorprendido", "sorpresa"), EmotionCategory.NEUTRAL),
    **dict.fromkeys(("neutral", "normal", "neutro"), EmotionCategory.NEUTRAL),
}


# ── Sensor data ───────────────────────────────────────────────


class Reading(BaseModel):
    """A single timestamped sample streamed by the SmartBand.

    ``device_timestamp`` is the band's own millisecond clock; ``received_at``
    is the host wall clock at decode time.  The two are not synchronised.
    """

    model_config = ConfigDict(frozen=True)

    heart_rate: float
    temperature: float
    raw_temperature: float
    infrared_value: int
    contact_detected: bool
    heart_rate_valid: bool
    device_timestamp: int
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def heart_rate_category(self) -> HeartRateCategory:
        if not self.heart_rate_valid or not self.heart_rate > 0:
            return HeartRateCategory.UNKNOWN
        if self.heart_rate < 60:
            return HeartRateCategory.LOW
        if self.heart_rate < 100:
            return HeartRateCategory.NORMAL
        if self.heart_rate < 120:
            return HeartRateCategory.ELEVATED
        return HeartRateCategory.HIGH

    @property
    def temperature_status(self) -> TemperatureStatus:
        t = self.temperature
        if math.isnan(t) or t < 0:
            return TemperatureStatus.UNKNOWN
        if t < 36.0:
            return TemperatureStatus.LOW
        if t <= 37.5:
            return TemperatureStatus.NORMAL
        return TemperatureStatus.ELEVATED

    @property
    def sensor_quality(self) -> SensorQuality:
        if not self.contact_detected:
            return SensorQuality.NO_CONTACT
        if self.infrared_value < 50_000:
            return SensorQuality.POOR_CONTACT
        if self.infrared_value > 200_000:
            return SensorQuality.EXCELLENT
        if self.infrared_value > 100_000:
            return SensorQuality.GOOD
        return SensorQuality.FAIR

    @property
    def heart_rate_status(self) -> str:
        """Display text; an invalid heart rate is never shown as a number."""
        if not self.contact_detected:
            return "No finger detected"
        if not self.heart_rate_valid:
            return "Calculating..."
        return f"{int(self.heart_rate)} BPM"

    @property
    def formatted_temperature(self) -> str:
        return f"{self.temperature:.1f}°C"


class EmotionLabel(BaseModel):
    """Latest output of the external emotion recogniser."""

    model_config = ConfigDict(frozen=True)

    emotion: str
    confidence: float = Field(ge=0.0, le=1.0)
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def category(self) -> EmotionCategory:
        return _EMOTION_CATEGORIES.get(self.emotion.lower(), EmotionCategory.UNKNOWN)

    @property
    def confidence_percentage(self) -> int:
        return int(self.confidence * 100)

    @property
    def is_high_confidence(self) -> bool:
        return self.confidence >= 0.7

    @property
    def is_valid(self) -> bool:
        return bool(self.emotion) and bool(self.message)


class IntegratedReading(BaseModel):
    """A reading paired with whatever emotion label was current when it arrived."""

    model_config = ConfigDict(frozen=True)

    reading: Reading
    emotion: EmotionLabel | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def has_emotion_data(self) -> bool:
        return self.emotion is not None

    @property
    def correlation_score(self) -> float | None:
        """Heuristic proximity of emotion intensity and normalised heart rate.

        Smaller means more aligned.  ``None`` without an emotion label or a
        valid heart rate.
        """
        if self.emotion is None or not self.reading.heart_rate_valid:
            return None
        normalized_hr = (self.reading.heart_rate - 60) / 40
        return abs(self.emotion.confidence - normalized_hr)


# ── Session statistics ────────────────────────────────────────


class SessionSummary(BaseModel):
    """Computed once, when a monitoring session stops."""

    duration_seconds: float
    total_readings: int
    valid_heart_rate_readings: int
    average_heart_rate: float | None = None
    min_heart_rate: float | None = None
    max_heart_rate: float | None = None
    average_temperature: float | None = None
    emotion_integration_count: int = 0

    @property
    def formatted_duration(self) -> str:
        minutes, seconds = divmod(int(self.duration_seconds), 60)
        return f"{minutes:02d}:{seconds:02d}"

    @property
    def heart_rate_range(self) -> float | None:
        if self.min_heart_rate is None or self.max_heart_rate is None:
            return None
        return self.max_heart_rate - self.min_heart_rate


class SessionStats(BaseModel):
    """Live snapshot of the active session."""

    duration_seconds: float
    total_readings: int
    valid_heart_rate_readings: int
    average_heart_rate: float | None = None
    connection_state: ConnectionState

    @property
    def readings_per_minute(self) -> float:
        minutes = self.duration_seconds / 60
        return self.total_readings / minutes if minutes > 0 else 0.0

    @property
    def valid_heart_rate_percentage(self) -> float:
        if self.total_readings == 0:
            return 0.0
        return self.valid_heart_rate_readings / self.total_readings * 100


class SessionRecord(BaseModel):
    """Persisted session metadata."""

    session_id: str
    user_id: str
    started_at: datetime
    ended_at: datetime | None = None
    status: str = "active"
    summary: SessionSummary | None = None
    device_info: dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()
