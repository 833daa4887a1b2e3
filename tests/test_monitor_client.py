import json
import threading
from wsgiref.simple_server import WSGIRequestHandler, make_server

import pytest

from flightpath.converters import (
    GpsFixType,
    GpsRawInt,
    Heartbeat,
    CustomMode,
    MainMode,
    SubMode,
    base_mode_from_flags,
)
from flightpath.monitor_client import CLEAR_SCREEN, main, render_dashboard, stream_messages
from flightpath.services import (
    FLAG_END_STREAM,
    STREAM_JSON_CONTENT_TYPE,
    Code,
    ConnectError,
    SubscribeHeartbeatResponse,
    SubscribeRawGpsResponse,
    encode_envelope,
)


class _Quiet(WSGIRequestHandler):
    def log_message(self, format, *args):
        pass


def _serve_once(status, envelopes):
    seen = {}

    def app(environ, start_response):
        seen["path"] = environ["PATH_INFO"]
        seen["content_type"] = environ.get("CONTENT_TYPE")
        seen["method"] = environ["REQUEST_METHOD"]
        start_response(status, [("Content-Type", STREAM_JSON_CONTENT_TYPE)])
        return [b"".join(envelopes)]

    httpd = make_server("127.0.0.1", 0, app, handler_class=_Quiet)
    thread = threading.Thread(target=httpd.handle_request, daemon=True)
    thread.start()
    host, port = httpd.server_address
    return f"http://{host}:{port}/", seen, httpd, thread


def _finish(httpd, thread):
    thread.join(timeout=5)
    httpd.server_close()


def _lines(text):
    return text[len(CLEAR_SCREEN):].split("\n")


def test_empty_dashboard():
    screen = render_dashboard(None, None, {})
    assert screen == (
        "\033[2J\033[H=== Flightpath Message Monitor ===\n\n"
        "Message Counts:\n---------------\n\n"
    )


def test_counts_are_sorted_by_name():
    screen = render_dashboard(None, None, {"HEARTBEAT": 2, "GPS_RAW_INT": 5})
    lines = _lines(screen)
    start = lines.index("---------------") + 1
    assert [line.split() for line in lines[start:start + 2]] == [
        ["GPS_RAW_INT", "5"],
        ["HEARTBEAT", "2"],
    ]
    assert lines[start].startswith("  GPS_RAW_INT ")


def test_heartbeat_section():
    hb = Heartbeat(
        type=2,
        autopilot=12,
        base_mode=base_mode_from_flags(0x81),
        custom_mode=CustomMode(MainMode.AUTO, SubMode.AUTO_MISSION),
        system_status=4,
        mavlink_version=3,
    )
    latest = SubscribeHeartbeatResponse(
        timestamp_ms=1700000000123, system_id=1, component_id=1, heartbeat=hb
    )
    lines = _lines(render_dashboard(latest, None, {"HEARTBEAT": 1}))
    assert lines[2] == "Latest HEARTBEAT:"
    assert lines[4].endswith(".123 (1700000000123 ms)")
    assert "System ID: 1, Component ID: 1" in lines
    assert "MAVLink Version: 3" in lines
    assert (
        "Base Mode: custom_mode=true, test=false, auto=false, guided=false, "
        "stabilize=false, hil=false, manual=false, safety=true"
    ) in lines
    assert "Custom Mode: MAIN_MODE_AUTO / SUB_MODE_AUTO_MISSION" in lines


def test_gps_section_omits_unknown_values():
    gps = GpsRawInt(
        fix_type=GpsFixType.FIX_3D,
        lat=473977418,
        lon=85455939,
        alt=488000,
        eph=100,
        epv=150,
        vel=65535,
        cog=65535,
        satellites_visible=255,
    )
    latest = SubscribeRawGpsResponse(timestamp_ms=0, system_id=1, component_id=1, gps_raw_int=gps)
    screen = render_dashboard(None, latest, {})
    lines = _lines(screen)
    assert "Latest GPS_RAW_INT:" in lines
    assert "Fix Type: GPS_FIX_TYPE_FIX_3D" in lines
    assert "Latitude: 47.3977418° (raw: 473977418)" in lines
    for absent in ("Ground Speed", "Course over Ground", "Satellites Visible",
                   "Altitude (Ellipsoid)", "Horizontal Accuracy"):
        assert absent not in screen


def test_stream_messages_yields_until_end():
    first = {"timestampMs": "1", "systemId": 1, "componentId": 2}
    second = {"timestampMs": "2", "systemId": 3, "componentId": 4}
    url, seen, httpd, thread = _serve_once(
        "200 OK",
        [
            encode_envelope(json.dumps(first).encode()),
            encode_envelope(json.dumps(second).encode()),
            encode_envelope(b"{}", FLAG_END_STREAM),
        ],
    )
    try:
        messages = list(stream_messages(url, "/flightpath.ConnectionService/SubscribeHeartbeat"))
    finally:
        _finish(httpd, thread)
    assert messages == [first, second]
    assert seen["path"] == "/flightpath.ConnectionService/SubscribeHeartbeat"
    assert seen["method"] == "POST"
    assert seen["content_type"] == STREAM_JSON_CONTENT_TYPE


def test_stream_messages_raises_end_stream_error():
    url, _, httpd, thread = _serve_once(
        "200 OK",
        [encode_envelope(b'{"error":{"code":"failed_precondition"}}', FLAG_END_STREAM)],
    )
    try:
        with pytest.raises(ConnectError) as info:
            list(stream_messages(url, "/flightpath.TelemetryService/SubscribeRawGps"))
    finally:
        _finish(httpd, thread)
    assert info.value.code is Code.FAILED_PRECONDITION


def test_stream_messages_maps_http_not_found():
    url, _, httpd, thread = _serve_once("404 Not Found", [b"404 page not found\n"])
    try:
        with pytest.raises(ConnectError) as info:
            list(stream_messages(url, "/missing/Call"))
    finally:
        _finish(httpd, thread)
    assert info.value.code is Code.UNIMPLEMENTED


def test_main_fails_on_invalid_configuration(monkeypatch):
    monkeypatch.setenv("FLIGHTPATH_GRPC_PORT", "70000")
    assert main([]) == 1