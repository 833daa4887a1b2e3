import io
import json
from wsgiref.util import setup_testing_defaults

from flightpath.app import build_server, main
from flightpath.config import default_config
from flightpath.converters import (
    GpsRawIntMessage,
    HeartbeatMessage,
    MavlinkFrame,
    gps_raw_int_to_proto,
    heartbeat_to_proto,
)
from flightpath.dispatcher import MessageDispatcher
from flightpath.services import (
    CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE,
    FLAG_END_STREAM,
    STREAM_JSON_CONTENT_TYPE,
    TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE,
    SubscribeHeartbeatResponse,
    SubscribeRawGpsResponse,
    decode_envelopes,
    encode_envelope,
)


def _call(server, path, method="POST"):
    body = encode_envelope(b"{}")
    environ = {}
    setup_testing_defaults(environ)
    environ.update(
        {
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "CONTENT_TYPE": STREAM_JSON_CONTENT_TYPE,
            "CONTENT_LENGTH": str(len(body)),
            "wsgi.input": io.BytesIO(body),
        }
    )
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = headers
        return lambda data: None

    result = server.wsgi_app(environ, start_response)
    return captured, result


def _read(result):
    try:
        return b"".join(result)
    finally:
        close = getattr(result, "close", None)
        if close is not None:
            close()


def test_heartbeat_stream_through_server():
    dispatcher = MessageDispatcher()
    server = build_server(default_config(), dispatcher)
    captured, result = _call(server, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE)
    msg = HeartbeatMessage(type=2, autopilot=12, base_mode=0x81, system_status=4)
    assert dispatcher.dispatch(MavlinkFrame(1, 1, 0, msg)) == 1
    dispatcher.stop()

    envelopes = decode_envelopes(_read(result))
    assert captured["status"] == "200 OK"
    assert len(envelopes) == 2
    response = SubscribeHeartbeatResponse.from_dict(json.loads(envelopes[0].payload))
    assert response.system_id == 1
    assert response.component_id == 1
    assert response.heartbeat == heartbeat_to_proto(msg)
    assert envelopes[1].flags & FLAG_END_STREAM
    assert json.loads(envelopes[1].payload) == {}


def test_raw_gps_stream_through_server():
    dispatcher = MessageDispatcher()
    server = build_server(default_config(), dispatcher)
    _, result = _call(server, TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE)
    msg = GpsRawIntMessage(time_usec=5, fix_type=3, lat=10, lon=20, alt=30)
    assert dispatcher.dispatch(MavlinkFrame(7, 9, 24, msg)) == 1
    dispatcher.stop()

    envelopes = decode_envelopes(_read(result))
    response = SubscribeRawGpsResponse.from_dict(json.loads(envelopes[0].payload))
    assert (response.system_id, response.component_id) == (7, 9)
    assert response.gps_raw_int == gps_raw_int_to_proto(msg)
    assert envelopes[-1].flags & FLAG_END_STREAM


def test_missing_dispatcher_reports_failed_precondition():
    server = build_server(default_config(), None)
    captured, result = _call(server, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE)
    envelopes = decode_envelopes(_read(result))
    assert len(envelopes) == 1
    assert json.loads(envelopes[0].payload) == {"error": {"code": "failed_precondition"}}


def test_unknown_path_is_not_found():
    server = build_server(default_config(), MessageDispatcher())
    captured, result = _call(server, "/flightpath.Unknown/Call")
    _read(result)
    assert captured["status"].startswith("404")


def test_cors_headers_applied_to_services():
    server = build_server(default_config(), None)
    environ = {}
    setup_testing_defaults(environ)
    environ.update(
        {
            "REQUEST_METHOD": "OPTIONS",
            "PATH_INFO": CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE,
            "HTTP_ORIGIN": "http://localhost:5173",
        }
    )
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = _read(server.wsgi_app(environ, start_response))
    assert body == b""
    assert captured["status"] == "200 OK"
    assert captured["headers"]["Access-Control-Allow-Origin"] == "http://localhost:5173"


def test_main_fails_on_invalid_configuration(monkeypatch):
    monkeypatch.setenv("FLIGHTPATH_GRPC_PORT", "0")
    assert main([]) == 1