"""Aggregate statistics over a session's integrated readings."""

from __future__ import annotations

from typing import Sequence

from mirrormind_biometrics.models import (
    ConnectionState,
    IntegratedReading,
    SessionStats,
    SessionSummary,
)


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def summarize_session(history: Sequence[IntegratedReading], duration_seconds: float) -> SessionSummary:
    """Heart-rate figures use valid readings only; temperature uses all of them."""
    heart_rates = [item.reading.heart_rate for item in history if item.reading.heart_rate_valid]
    temperatures = [item.reading.temperature for item in history]
    return SessionSummary(
        duration_seconds=duration_seconds,
        total_readings=len(history),
        valid_heart_rate_readings=len(heart_rates),
        average_heart_rate=_mean(heart_rates),
        min_heart_rate=min(heart_rates) if heart_rates else None,
        max_heart_rate=max(heart_rates) if heart_rates else None,
        average_temperature=_mean(temperatures),
        emotion_integration_count=sum(1 for item in history if item.has_emotion_data),
    )


def live_stats(
    history: Sequence[IntegratedReading],
    duration_seconds: float,
    connection_state: ConnectionState,
) -> SessionStats:
    heart_rates = [item.reading.heart_rate for item in history if item.reading.heart_rate_valid]
    return SessionStats(
        duration_seconds=duration_seconds,
        total_readings=len(history),
        valid_heart_rate_readings=len(heart_rates),
        average_heart_rate=_mean(heart_rates),
        connection_state=connection_state,
    )
