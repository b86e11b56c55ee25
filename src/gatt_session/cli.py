#!/usr/bin/env python3
"""
Talk to one characteristic of a BLE peripheral. Outputs JSON lines to stdout.

Usage:
  gatt-session --address AA:BB:CC:DD:EE:FF services
  gatt-session --address AA:BB:CC:DD:EE:FF read 2a19
  gatt-session --address AA:BB:CC:DD:EE:FF write <uuid> --text "hello" | --int32 42
  gatt-session --address AA:BB:CC:DD:EE:FF stream 2a37 [--export rr.csv]

Stdout: "# connected HH:MM:SS" when linked, then one JSON line per decoded value.
Filter status with e.g. grep -v '^# '. Diagnostics go to stderr.
With stream --export, the RR intervals collected while subscribed are written
on Ctrl+C (or when the link drops) and cleared from memory.
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import asdict
from datetime import datetime

from gatt_session.ble_transport import DEFAULT_CONNECT_TIMEOUT
from gatt_session.codec import RESULT_CHARACTERISTIC_UUID
from gatt_session.connection import ConnectionManager
from gatt_session.models import Capabilities, HeartRate, Measurement
from gatt_session.rr_export import export_rr_intervals

logger = logging.getLogger("gatt_session.cli")

_KINDS = {
    "Integer32": "integer32",
    "CustomInteger": "custom_integer",
    "Utf8Text": "utf8_text",
    "HeartRate": "heart_rate",
    "BatteryPercent": "battery_percent",
    "RawHex": "raw_hex",
    "Unsupported": "unsupported",
    "Malformed": "malformed",
    "Empty": "empty",
}


def _setup_logging(quiet: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else logging.INFO,
        format="[%(asctime)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _emit(obj: dict) -> None:
    """Print to stdout; exit cleanly if downstream closed the pipe."""
    try:
        print(json.dumps(obj), flush=True)
    except BrokenPipeError:
        sys.exit(0)


def measurement_to_dict(measurement: Measurement) -> dict:
    kind = _KINDS.get(type(measurement).__name__, type(measurement).__name__.lower())
    if isinstance(measurement, HeartRate):
        return {
            "kind": kind,
            "hr": measurement.bpm,
            "rr_ms": [round(rr, 2) for rr in measurement.rr_ms],
            "energy_expended": measurement.energy_expended,
            "contact": measurement.contact_detected,
        }
    return {"kind": kind, **asdict(measurement)}


def _capability_names(caps: Capabilities) -> list[str]:
    return [c.name.lower() for c in Capabilities if c and c in caps]


async def _cmd_services(manager: ConnectionManager, args) -> int:
    services = await manager.discover_services()
    if not services.ok:
        logger.error("Device unreachable: %s", services.status)
        return 1
    for service in services.items:
        found = await manager.discover_characteristics(service)
        if not found.ok:
            logger.warning("Error accessing service %s: %s", service.uuid, found.status)
        _emit({
            "service": service.uuid,
            "name": service.description,
            "characteristics": [
                {
                    "uuid": c.uuid,
                    "handle": c.handle,
                    "name": c.description,
                    "properties": _capability_names(c.capabilities),
                }
                for c in found.items
            ],
        })
    return 0


async def _select(manager: ConnectionManager, uuid: str):
    status, characteristic = await manager.find_characteristic(uuid)
    if characteristic is None:
        logger.error("No characteristic %s: %s", uuid, status)
        return None
    selected = await manager.select_characteristic(characteristic)
    if not selected.status.ok:
        logger.warning("Descriptor read failure: %s", selected.status)
    return selected.session


async def _cmd_read(manager: ConnectionManager, args) -> int:
    session = await _select(manager, args.uuid)
    if session is None:
        return 1
    result = await session.read()
    if not result.status.ok:
        logger.error("Read failed: %s", result.status)
        return 1
    _emit({**measurement_to_dict(session.decode(result.value)), "ts": time.time()})
    return 0


async def _cmd_write(manager: ConnectionManager, args) -> int:
    session = await _select(manager, args.uuid)
    if session is None:
        return 1
    if args.int32 is not None:
        status = await session.write_int32(args.int32)
    else:
        status = await session.write_text(args.text)
    if not status.ok:
        logger.error("Write failed: %s", status)
        return 1
    logger.info("Successfully wrote value to device")
    return 0


async def _cmd_stream(manager: ConnectionManager, args) -> int:
    session = await _select(manager, args.uuid)
    if session is None:
        return 1
    status = await session.subscribe()
    if not status.ok:
        logger.error("Error registering for value changes: %s", status)
        return 1
    logger.info("Measurements started (Ctrl+C to stop).")
    try:
        async for measurement in session.notifications():
            _emit({**measurement_to_dict(measurement), "ts": time.time()})
    finally:
        if session.is_subscribed:
            released = await session.unsubscribe()
            if released.ok:
                logger.info("Measurements ended.")
            else:
                logger.error("Error un-registering for notifications: %s", released)
        if args.export:
            try:
                n = export_rr_intervals(manager.samples, args.export)
                logger.info("Saved %d RR intervals to %s", n, args.export)
            except OSError as e:
                logger.error("Could not write %s: %s (RR intervals kept)", args.export, e)
    if not manager.is_connected:
        logger.error("Connection lost.")
        return 1
    return 0


_COMMANDS = {
    "services": _cmd_services,
    "read": _cmd_read,
    "write": _cmd_write,
    "stream": _cmd_stream,
}


async def _run(args) -> int:
    manager = ConnectionManager(connect_timeout=args.connect_timeout, result_uuid=args.result_uuid)
    logger.info("Connecting to %s (timeout %.0fs)...", args.address, args.connect_timeout)
    status = await manager.connect(args.address)
    if not status.ok:
        logger.error("Failed to connect to device: %s", status)
        return 1
    print(f"# connected {datetime.now().strftime('%H:%M:%S')}", flush=True)
    try:
        return await _COMMANDS[args.command](manager, args)
    finally:
        released = await manager.disconnect()
        if not released.ok:
            logger.error("Unable to reset app state: %s", released)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GATT characteristic session client (JSON lines on stdout)")
    parser.add_argument("--address", "-a", required=True, help="Peripheral address (MAC, or UUID on macOS)")
    parser.add_argument(
        "--connect-timeout", "-t",
        type=float,
        default=DEFAULT_CONNECT_TIMEOUT,
        help=f"BLE connection timeout in seconds (default {DEFAULT_CONNECT_TIMEOUT:.0f}).",
    )
    parser.add_argument(
        "--result-uuid",
        default=RESULT_CHARACTERISTIC_UUID,
        help="UUID of the custom integer Result characteristic (default %(default)s).",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Quiet mode: only warnings and errors on stderr.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("services", help="List services and their characteristics")

    p_read = sub.add_parser("read", help="Read and decode one characteristic")
    p_read.add_argument("uuid", help="Characteristic UUID (16-bit short form accepted)")

    p_write = sub.add_parser("write", help="Write a value to one characteristic")
    p_write.add_argument("uuid", help="Characteristic UUID")
    value = p_write.add_mutually_exclusive_group(required=True)
    value.add_argument("--text", help="UTF-8 text to write")
    value.add_argument("--int32", type=int, help="Signed 32-bit integer, written little-endian")

    p_stream = sub.add_parser("stream", help="Subscribe and print each decoded notification")
    p_stream.add_argument("uuid", help="Characteristic UUID, e.g. 2a37 for Heart Rate Measurement")
    p_stream.add_argument("--export", "-e", default=None, metavar="PATH", help="Write collected RR intervals here on stop")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    _setup_logging(args.quiet)
    try:
        sys.exit(asyncio.run(_run(args)))
    except KeyboardInterrupt:
        logger.info("Stopped.")
        sys.exit(0)


if __name__ == "__main__":
    main()
