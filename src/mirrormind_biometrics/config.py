"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _resolve_db_dir() -> Path:
    """Return (and create) the directory that holds the SQLite file."""
    d = _PROJECT_ROOT / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _default_db_url() -> str:
    return f"sqlite+aiosqlite:///{_resolve_db_dir() / 'mirrormind.db'}"


class Settings(BaseSettings):
    """All runtime configuration for the SmartBand biometric client.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in the flat
    ``MIRRORMIND_`` namespace, e.g. ``MIRRORMIND_SCAN_TIMEOUT_SECONDS=20``.
    """

    model_config = SettingsConfigDict(
        env_prefix="MIRRORMIND_",
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── SmartBand identity ────────────────────────────────────
    device_name: str = "MirrorMind-SmartBand"
    service_uuid: str = "12345678-1234-1234-1234-123456789abc"
    characteristic_uuid: str = "87654321-4321-4321-4321-cba987654321"

    # ── Connection behaviour ──────────────────────────────────
    scan_timeout_seconds: float = 10.0
    connect_timeout_seconds: float = 15.0
    reconnect_interval_seconds: float = 5.0
    reconnect_after_disconnect_seconds: float = 2.0
    radio_ready_delay_seconds: float = 0.5  # debounce for radio power flaps

    # ── Session buffering ─────────────────────────────────────
    buffer_capacity: int = 50
    buffer_flush_threshold: int | None = None  # drain on size as well as on timer
    drain_interval_seconds: float | None = 10.0
    history_limit: int = 100

    # ── Storage ───────────────────────────────────────────────
    database_url: str = ""
    storage_max_readings: int = 1000
    default_user_id: str = "default_user"

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or _default_db_url()


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
