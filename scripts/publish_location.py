#!/usr/bin/env python3
"""Publish location fixes from an HTTP position endpoint to an MQTT broker.

Stands in for the single-screen publisher app: start publishing, print
status changes, stop on Ctrl+C or SIGTERM.

Broker settings come from ``LOCPUB_*`` environment variables; flags
override them.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pylocpub import (  # noqa: E402
    HttpPollingSampleSource,
    PublisherConfig,
    PublisherController,
    PublisherError,
    PublisherStatus,
)

_LOG = logging.getLogger("publish_location")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stream location fixes to an MQTT topic.",
    )
    parser.add_argument(
        "url",
        help="HTTP endpoint returning the current fix as JSON.",
    )
    parser.add_argument("--host", help="Broker host (LOCPUB_HOST).")
    parser.add_argument("--port", type=int, help="Broker port (LOCPUB_PORT).")
    parser.add_argument("--topic", help="Publish topic (LOCPUB_TOPIC).")
    parser.add_argument("--student-id", help="First payload field (LOCPUB_STUDENT_ID).")
    parser.add_argument(
        "--interval-ms",
        type=int,
        help="Poll interval in milliseconds (LOCPUB_UPDATE_INTERVAL_MS).",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _overrides(args: argparse.Namespace) -> dict[str, object]:
    overrides: dict[str, object] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.topic:
        overrides["topic"] = args.topic
    if args.student_id is not None:
        overrides["student_id"] = args.student_id
    if args.interval_ms:
        overrides["update_interval_ms"] = args.interval_ms
        overrides["min_update_interval_ms"] = min(args.interval_ms, PublisherConfig.min_update_interval_ms)
    return overrides


def _print_status(status: PublisherStatus) -> None:
    error = f" error={status.last_error}" if status.last_error else ""
    print(
        f"[publisher] {status.state} connection={status.connection} "
        f"sent={status.samples_sent} lost={status.samples_lost}{error}",
    )


async def _run(args: argparse.Namespace, config: PublisherConfig) -> int:
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stopped.set)

    source = HttpPollingSampleSource(args.url)
    controller = PublisherController(source, config, on_fatal=lambda _exc: stopped.set())
    controller.subscribe(_print_status)

    async with controller:
        await controller.start()
        timeout = args.duration if args.duration > 0 else None
        try:
            await asyncio.wait_for(stopped.wait(), timeout)
        except TimeoutError:
            print(f"[publisher] Reached --duration={args.duration}s, stopping.")

    status = controller.status
    return 1 if status.last_error and status.samples_sent == 0 else 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = PublisherConfig.from_env(**_overrides(args))
        return asyncio.run(_run(args, config))
    except PublisherError as exc:
        print(f"[publisher] {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(_main())
