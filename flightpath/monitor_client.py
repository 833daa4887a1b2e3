"""Terminal monitor streaming heartbeats and raw GPS from a running server."""

from __future__ import annotations

import argparse
import gzip
import json
import sys
import threading
import urllib.error
import urllib.request
from collections import Counter
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Optional

from flightpath.config import ConfigError, load_config
from flightpath.converters import GpsFixType, MainMode, SubMode
from flightpath.services import (
    CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE,
    FLAG_COMPRESSED,
    FLAG_END_STREAM,
    STREAM_JSON_CONTENT_TYPE,
    TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE,
    Code,
    ConnectError,
    SubscribeHeartbeatResponse,
    SubscribeRawGpsResponse,
    encode_envelope,
    iter_envelopes,
)

CLEAR_SCREEN = "\033[2J\033[H"

_HTTP_CODES = {
    400: Code.INTERNAL,
    401: Code.UNAUTHENTICATED,
    403: Code.PERMISSION_DENIED,
    404: Code.UNIMPLEMENTED,
    429: Code.UNAVAILABLE,
    502: Code.UNAVAILABLE,
    503: Code.UNAVAILABLE,
    504: Code.UNAVAILABLE,
}


def _enum_label(value: int, enum_class: type[IntEnum], prefix: str) -> str:
    try:
        return prefix + enum_class(value).name
    except ValueError:
        return str(int(value))


def _format_timestamp(timestamp_ms: int) -> str:
    seconds, millis = divmod(timestamp_ms, 1000)
    moment = datetime.fromtimestamp(seconds)
    return f"{moment:%Y-%m-%d %H:%M:%S}.{millis:03d}"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _heartbeat_lines(latest: SubscribeHeartbeatResponse) -> list[str]:
    lines = [
        "Latest HEARTBEAT:",
        "----------------",
        f"Timestamp: {_format_timestamp(latest.timestamp_ms)} ({latest.timestamp_ms} ms)",
        f"System ID: {latest.system_id}, Component ID: {latest.component_id}",
    ]
    hb = latest.heartbeat
    if hb is not None:
        lines += [
            f"Vehicle Type: {int(hb.type)}",
            f"Autopilot: {int(hb.autopilot)}",
            f"System Status: {int(hb.system_status)}",
            f"MAVLink Version: {int(hb.mavlink_version)}",
        ]
        bm = hb.base_mode
        if bm is not None:
            lines.append(
                "Base Mode: "
                f"custom_mode={_flag(bm.custom_mode_enabled)}, test={_flag(bm.test_enabled)}, "
                f"auto={_flag(bm.auto_enabled)}, guided={_flag(bm.guided_enabled)}, "
                f"stabilize={_flag(bm.stabilize_enabled)}, hil={_flag(bm.hil_enabled)}, "
                f"manual={_flag(bm.manual_input_enabled)}, safety={_flag(bm.safety_armed)}"
            )
        cm = hb.custom_mode
        if cm is not None:
            lines.append(
                f"Custom Mode: {_enum_label(cm.main_mode, MainMode, 'MAIN_MODE_')} / "
                f"{_enum_label(cm.sub_mode, SubMode, 'SUB_MODE_')}"
            )
    return lines + [""]


def _gps_lines(latest: SubscribeRawGpsResponse) -> list[str]:
    lines = [
        "Latest GPS_RAW_INT:",
        "------------------",
        f"Timestamp: {_format_timestamp(latest.timestamp_ms)} ({latest.timestamp_ms} ms)",
        f"System ID: {latest.system_id}, Component ID: {latest.component_id}",
    ]
    gps = latest.gps_raw_int
    if gps is not None:
        lines += [
            f"Fix Type: {_enum_label(gps.fix_type, GpsFixType, 'GPS_FIX_TYPE_')}",
            f"Latitude: {gps.lat / 1e7:.7f}° (raw: {gps.lat})",
            f"Longitude: {gps.lon / 1e7:.7f}° (raw: {gps.lon})",
            f"Altitude (MSL): {gps.alt / 1000:.3f} m (raw: {gps.alt} mm)",
        ]
        if gps.alt_ellipsoid != 0:
            lines.append(
                f"Altitude (Ellipsoid): {gps.alt_ellipsoid / 1000:.3f} m "
                f"(raw: {gps.alt_ellipsoid} mm)"
            )
        lines += [
            f"HDOP: {gps.eph / 100:.2f} (raw: {gps.eph})",
            f"VDOP: {gps.epv / 100:.2f} (raw: {gps.epv})",
        ]
        if gps.vel != 65535:
            lines.append(f"Ground Speed: {gps.vel / 100:.2f} m/s (raw: {gps.vel} cm/s)")
        if gps.cog != 65535:
            lines.append(f"Course over Ground: {gps.cog / 100:.2f}° (raw: {gps.cog})")
        if gps.satellites_visible != 255:
            lines.append(f"Satellites Visible: {gps.satellites_visible}")
        if gps.h_acc != 0:
            lines.append(f"Horizontal Accuracy: {gps.h_acc / 1000:.3f} m (raw: {gps.h_acc} mm)")
        if gps.v_acc != 0:
            lines.append(f"Vertical Accuracy: {gps.v_acc / 1000:.3f} m (raw: {gps.v_acc} mm)")
        if gps.vel_acc != 0:
            lines.append(
                f"Speed Accuracy: {gps.vel_acc / 1000:.3f} m/s (raw: {gps.vel_acc} mm/s)"
            )
    return lines + [""]


def render_dashboard(
    latest_heartbeat: Optional[SubscribeHeartbeatResponse],
    latest_gps_raw_int: Optional[SubscribeRawGpsResponse],
    message_counts: Mapping[str, int],
) -> str:
    """Return the whole dashboard screen, starting with a clear-screen sequence."""
    lines = ["=== Flightpath Message Monitor ===", ""]
    if latest_heartbeat is not None:
        lines += _heartbeat_lines(latest_heartbeat)
    if latest_gps_raw_int is not None:
        lines += _gps_lines(latest_gps_raw_int)
    lines += ["Message Counts:", "---------------"]
    lines += [f"  {name:<30} {message_counts[name]}" for name in sorted(message_counts)]
    lines.append("")
    return CLEAR_SCREEN + "\n".join(lines) + "\n"


def _code(value: Any) -> Code:
    try:
        return Code(value)
    except ValueError:
        return Code.UNKNOWN


def stream_messages(base_url: str, procedure: str) -> Iterator[dict[str, Any]]:
    """Call a server-streaming procedure and yield each response message as JSON data.

    Raises ConnectError when the server ends the stream with an error.
    """
    request = urllib.request.Request(
        base_url.rstrip("/") + procedure,
        data=encode_envelope(b"{}"),
        method="POST",
        headers={
            "Content-Type": STREAM_JSON_CONTENT_TYPE,
            "Connect-Protocol-Version": "1",
        },
    )
    try:
        response = urllib.request.urlopen(request)
    except urllib.error.HTTPError as exc:
        exc.close()
        raise ConnectError(_HTTP_CODES.get(exc.code, Code.UNKNOWN), f"HTTP status {exc.code}") from exc

    with response:
        for flags, payload in iter_envelopes(response):
            if flags & FLAG_COMPRESSED:
                payload = gzip.decompress(payload)
            data = json.loads(payload or b"{}")
            if flags & FLAG_END_STREAM:
                error = data.get("error") if isinstance(data, dict) else None
                if error:
                    raise ConnectError(_code(error.get("code")), error.get("message", ""))
                return
            yield data
    raise ConnectError(Code.INTERNAL, "stream ended without an end-of-stream message")


@dataclass
class _Monitor:
    latest_heartbeat: Optional[SubscribeHeartbeatResponse] = None
    latest_gps_raw_int: Optional[SubscribeRawGpsResponse] = None
    counts: Counter = field(default_factory=Counter)
    lock: threading.Lock = field(default_factory=threading.Lock)
    failed: threading.Event = field(default_factory=threading.Event)

    def follow(self, server_url: str, procedure: str, label: str) -> None:
        endpoint = procedure.rsplit("/", 1)[-1]
        print(f"Connecting to {endpoint} endpoint: {server_url}")
        error_prefix = "Stream error" if label == "HEARTBEAT" else f"{label} stream error"
        try:
            stream = stream_messages(server_url, procedure)
        except (ConnectError, OSError) as exc:
            print(f"Error calling {endpoint}: {exc}", file=sys.stderr)
            self.failed.set()
            return
        try:
            for data in stream:
                with self.lock:
                    self.counts[label] += 1
                    if label == "HEARTBEAT":
                        self.latest_heartbeat = SubscribeHeartbeatResponse.from_dict(data)
                    else:
                        self.latest_gps_raw_int = SubscribeRawGpsResponse.from_dict(data)
                    screen = render_dashboard(
                        self.latest_heartbeat, self.latest_gps_raw_int, self.counts
                    )
                    sys.stdout.write(screen)
                    sys.stdout.flush()
        except (ConnectError, OSError, ValueError) as exc:
            print(f"{error_prefix}: {exc}", file=sys.stderr)
            self.failed.set()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Stream heartbeats and raw GPS from the configured server until interrupted."""
    parser = argparse.ArgumentParser(
        prog="flightpath-monitor",
        description="Show live messages from a Flightpath server. "
        "Configured through FLIGHTPATH_* environment variables.",
    )
    parser.parse_args(argv)

    try:
        config = load_config()
    except ConfigError as exc:
        print(f"failed to load configuration: {exc}", file=sys.stderr)
        return 1

    server_url = f"http://{config.server_addr()}"
    monitor = _Monitor()
    threads = [
        threading.Thread(
            target=monitor.follow,
            args=(server_url, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE, "HEARTBEAT"),
            daemon=True,
        ),
        threading.Thread(
            target=monitor.follow,
            args=(server_url, TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE, "GPS_RAW_INT"),
            daemon=True,
        ),
    ]
    for thread in threads:
        thread.start()
    print("Press Ctrl+C to stop")
    print("")

    try:
        while any(thread.is_alive() for thread in threads):
            if monitor.failed.wait(0.2):
                return 1
        return 1 if monitor.failed.is_set() else 0
    except KeyboardInterrupt:
        print("\nStopping...")
        return 0