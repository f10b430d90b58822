#!/usr/bin/env python3
"""Subscribe to the location topic and print decoded payloads.

Consumer-side check of the pipe-delimited payload contract.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pylocpub import PayloadFormatError, PublisherConfig, decode_payload  # noqa: E402

try:
    import paho.mqtt.client as mqtt
except ImportError as exc:  # pragma: no cover - environment/setup issue
    raise SystemExit(
        "Missing dependency 'paho-mqtt'. Install with: pip install paho-mqtt",
    ) from exc

_LOG = logging.getLogger("watch_locations")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print decoded location payloads.")
    parser.add_argument("--host", help="Broker host (LOCPUB_HOST).")
    parser.add_argument("--port", type=int, help="Broker port (LOCPUB_PORT).")
    parser.add_argument("--topic", help="Topic to watch (LOCPUB_TOPIC).")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logs.")
    return parser.parse_args()


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {
        key: value for key, value in (("host", args.host), ("port", args.port), ("topic", args.topic)) if value
    }
    config = PublisherConfig.from_env(**overrides)

    started_at = time.time()
    counts = {"ok": 0, "malformed": 0}
    should_stop = False

    def stop_handler(_signum: int, _frame: Any) -> None:
        nonlocal should_stop
        should_stop = True

    signal.signal(signal.SIGINT, stop_handler)
    signal.signal(signal.SIGTERM, stop_handler)

    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        protocol=mqtt.MQTTv5,
    )
    client.enable_logger(_LOG)
    if config.username is not None:
        client.username_pw_set(config.username, config.password)
    if config.tls:
        client.tls_set()

    def on_connect(
        c: mqtt.Client,
        _userdata: Any,
        _flags: mqtt.ConnectFlags,
        reason_code: mqtt.ReasonCode,
        _properties: mqtt.Properties | None,
    ) -> None:
        if reason_code.value != 0:
            print(f"[watch] MQTT connect failed: {reason_code}", file=sys.stderr)
            c.disconnect()
            return
        print(f"[watch] Connected. Subscribing to {config.topic}")
        c.subscribe(config.topic, qos=1)

    def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            location = decode_payload(msg.payload)
        except PayloadFormatError as exc:
            counts["malformed"] += 1
            print(f"[watch] malformed payload ({exc}): {msg.payload!r}")
            return
        counts["ok"] += 1
        fix_time = time.strftime("%H:%M:%S", time.localtime(location.timestamp_ms / 1000))
        print(
            f"[watch] {location.student_id} at {fix_time} "
            f"{location.latitude:.6f},{location.longitude:.6f} {location.speed_kmh:.2f} km/h",
        )

    client.on_connect = on_connect
    client.on_message = on_message

    print(f"[watch] Connecting to {config.host}:{config.port}...")
    try:
        client.connect(config.host, config.port, keepalive=config.keepalive)
        client.loop_start()
        while not should_stop:
            if args.duration > 0 and (time.time() - started_at) >= args.duration:
                break
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        print(f"[watch] Connect failed: {exc}", file=sys.stderr)
        return 2
    finally:
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    print(f"[watch] decoded={counts['ok']} malformed={counts['malformed']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
