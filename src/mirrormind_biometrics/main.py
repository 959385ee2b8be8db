"""Application entrypoint — run a monitoring session or one-off commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog

from mirrormind_biometrics.config import Settings, get_settings
from mirrormind_biometrics.errors import DecodeError
from mirrormind_biometrics.logger import setup_logging

logger = structlog.get_logger(__name__)


async def _monitor(settings: Settings, *, simulate: bool, duration: float, adapter: str | None) -> None:
    from mirrormind_biometrics.bluetooth.connection import ConnectionStateMachine
    from mirrormind_biometrics.emotion.source import LatestEmotionHolder
    from mirrormind_biometrics.session.coordinator import SessionCoordinator
    from mirrormind_biometrics.storage.repository import BiometricStore
    from mirrormind_biometrics.streaming.events import ReadingReceived

    if simulate:
        from mirrormind_biometrics.bluetooth.simulated import SimulatedTransport

        transport = SimulatedTransport(settings)
    else:
        from mirrormind_biometrics.bluetooth.bleak_transport import BleakTransport

        transport = BleakTransport(adapter=adapter)

    store = BiometricStore(settings=settings)
    await store.init()
    machine = ConnectionStateMachine(transport, settings=settings)
    coordinator = SessionCoordinator(
        machine, store, emotion_source=LatestEmotionHolder(), settings=settings,
    )

    def log_reading(event: ReadingReceived) -> None:
        r = event.reading
        logger.info(
            "monitor.reading",
            heart_rate=r.heart_rate_status,
            temperature=r.formatted_temperature,
            quality=r.sensor_quality.display_label,
        )

    machine.bus.subscribe(ReadingReceived, log_reading)

    try:
        await coordinator.start_session()
        await asyncio.sleep(duration)
    finally:
        summary = await coordinator.stop_session()
        coordinator.close()
        await machine.close()
        await store.close()

    if summary is not None:
        print(json.dumps({
            "duration": summary.formatted_duration,
            **summary.model_dump(mode="json"),
        }, indent=2))
    if coordinator.error_message:
        print(f"Last error: {coordinator.error_message}", file=sys.stderr)


async def _list_sessions(settings: Settings, limit: int) -> None:
    from mirrormind_biometrics.storage.repository import BiometricStore

    store = BiometricStore(settings=settings)
    await store.init()
    try:
        for record in await store.list_sessions(limit=limit):
            readings = record.summary.total_readings if record.summary else "-"
            print(f"{record.session_id}  {record.status:<9}  {record.started_at:%Y-%m-%d %H:%M:%S}  readings={readings}")
    finally:
        await store.close()


def _decode(payload: str) -> int:
    from mirrormind_biometrics.protocol.codec import decode_reading, reading_to_record

    try:
        reading = decode_reading(payload)
    except DecodeError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(json.dumps(reading_to_record(reading), indent=2))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="mirrormind",
        description="SmartBand biometric ingestion for MirrorMind.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── monitor ───────────────────────────────────────────────
    monitor_parser = sub.add_parser("monitor", help="Run one monitoring session.")
    monitor_parser.add_argument("--simulate", action="store_true", help="Use the simulated SmartBand.")
    monitor_parser.add_argument("--duration", type=float, default=60.0, help="Seconds to monitor.")
    monitor_parser.add_argument("--adapter", default=None, help="Host Bluetooth adapter (e.g. hci0).")

    # ── sessions ──────────────────────────────────────────────
    sessions_parser = sub.add_parser("sessions", help="List stored sessions.")
    sessions_parser.add_argument("--limit", type=int, default=20)

    # ── decode ────────────────────────────────────────────────
    decode_parser = sub.add_parser("decode", help="Decode one JSON notification payload.")
    decode_parser.add_argument("payload")

    # ── init-db ───────────────────────────────────────────────
    sub.add_parser("init-db", help="Create database tables.")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "monitor":
        asyncio.run(_monitor(
            settings, simulate=args.simulate, duration=args.duration, adapter=args.adapter,
        ))
    elif args.command == "sessions":
        asyncio.run(_list_sessions(settings, args.limit))
    elif args.command == "decode":
        sys.exit(_decode(args.payload))
    elif args.command == "init-db":
        from mirrormind_biometrics.storage.database import init_db

        asyncio.run(init_db())
        print("Database tables created.")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
