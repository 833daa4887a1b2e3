import gzip
import io
import json
import logging
import time

import pytest

from flightpath.config import default_config
from flightpath.converters import (
    GpsFixType,
    GpsRawIntMessage,
    HeartbeatMessage,
    MainMode,
    MavlinkFrame,
    SubMode,
    gps_raw_int_to_proto,
    heartbeat_to_proto,
)
from flightpath.dispatcher import MessageDispatcher
from flightpath.server import NOT_FOUND_BODY
from flightpath.services import (
    CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE,
    FLAG_COMPRESSED,
    FLAG_END_STREAM,
    STREAM_JSON_CONTENT_TYPE,
    TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE,
    Code,
    ConnectError,
    ConnectionService,
    Envelope,
    ServiceContext,
    SubscribeHeartbeatResponse,
    SubscribeRawGpsResponse,
    TelemetryService,
    connection_service_handler,
    decode_envelopes,
    encode_envelope,
    iter_envelopes,
    telemetry_service_handler,
)

PX4_HEARTBEAT = HeartbeatMessage(
    type=2, autopilot=12, base_mode=0x81, custom_mode=(4 << 24) | (4 << 16), system_status=4
)
GPS = GpsRawIntMessage(time_usec=123456789, fix_type=3, lat=473977420, lon=85455940, alt=488000)


def heartbeat_frame():
    return MavlinkFrame(system_id=1, component_id=1, message_id=0, message=PX4_HEARTBEAT)


def gps_frame():
    return MavlinkFrame(system_id=1, component_id=1, message_id=24, message=GPS)


def make_context(dispatcher):
    return ServiceContext(
        config=default_config(), logger=logging.getLogger("test"), dispatcher=dispatcher
    )


def call(app, path, body=b"", method="POST", content_type=STREAM_JSON_CONTENT_TYPE, extra=None):
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "CONTENT_TYPE": content_type,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
    }
    environ.update(extra or {})
    result = app(environ, start_response)
    return captured, result


def test_encode_envelope_wire_format():
    assert encode_envelope(b"{}") == b"\x00\x00\x00\x00\x02{}"
    assert encode_envelope(b"{}", FLAG_END_STREAM) == b"\x02\x00\x00\x00\x02{}"


def test_decode_envelopes_round_trip():
    data = encode_envelope(b"abc") + encode_envelope(b"", FLAG_END_STREAM)
    assert decode_envelopes(data) == [Envelope(0, b"abc"), Envelope(FLAG_END_STREAM, b"")]


@pytest.mark.parametrize("data", [b"\x00\x00", encode_envelope(b"abcdef")[:-2]])
def test_decode_envelopes_truncated(data):
    with pytest.raises(ValueError):
        decode_envelopes(data)


def test_iter_envelopes_reads_stream():
    data = encode_envelope(b"one") + encode_envelope(b"two", FLAG_END_STREAM)
    assert list(iter_envelopes(io.BytesIO(data))) == decode_envelopes(data)
    with pytest.raises(ValueError):
        list(iter_envelopes(io.BytesIO(data[:-1])))


def test_heartbeat_response_round_trip():
    response = SubscribeHeartbeatResponse(
        timestamp_ms=1700000000000, system_id=1, component_id=1,
        heartbeat=heartbeat_to_proto(PX4_HEARTBEAT),
    )
    data = response.to_dict()
    assert data["timestampMs"] == "1700000000000"
    assert data["heartbeat"]["baseMode"]["safetyArmed"] is True
    assert data["heartbeat"]["customMode"]["mainMode"] == "MAIN_MODE_AUTO"
    assert SubscribeHeartbeatResponse.from_dict(json.loads(json.dumps(data))) == response


def test_heartbeat_response_unspecified_modes_use_names():
    response = SubscribeHeartbeatResponse(heartbeat=heartbeat_to_proto(HeartbeatMessage()))
    custom = response.to_dict()["heartbeat"]["customMode"]
    assert custom == {"mainMode": "MAIN_MODE_UNSPECIFIED", "subMode": "SUB_MODE_UNSPECIFIED"}


def test_heartbeat_response_from_dict_accepts_numbers_and_defaults():
    response = SubscribeHeartbeatResponse.from_dict(
        {"systemId": 3, "heartbeat": {"customMode": {"mainMode": 4, "subMode": "4"}}}
    )
    assert response.system_id == 3
    assert response.timestamp_ms == 0
    assert response.heartbeat.custom_mode.main_mode is MainMode.AUTO
    assert response.heartbeat.custom_mode.sub_mode is SubMode.AUTO_MISSION
    assert SubscribeHeartbeatResponse.from_dict({}).heartbeat is None


def test_heartbeat_response_from_dict_rejects_bad_values():
    with pytest.raises(ValueError):
        SubscribeHeartbeatResponse.from_dict({"heartbeat": {"customMode": {"mainMode": "BOGUS"}}})
    with pytest.raises(ValueError):
        SubscribeHeartbeatResponse.from_dict([])


def test_raw_gps_response_round_trip():
    response = SubscribeRawGpsResponse(
        timestamp_ms=5, system_id=1, component_id=1, gps_raw_int=gps_raw_int_to_proto(GPS)
    )
    data = response.to_dict()
    assert data["gpsRawInt"]["timeUsec"] == "123456789"
    assert data["gpsRawInt"]["lat"] == 473977420
    restored = SubscribeRawGpsResponse.from_dict(json.loads(json.dumps(data)))
    assert restored == response
    assert restored.gps_raw_int.fix_type is GpsFixType.FIX_2D


def test_connection_service_requires_dispatcher():
    service = ConnectionService(make_context(None))
    with pytest.raises(ConnectError) as info:
        service.subscribe_heartbeat()
    assert info.value.code is Code.FAILED_PRECONDITION


def test_telemetry_service_requires_dispatcher():
    with pytest.raises(ConnectError) as info:
        TelemetryService(make_context(None)).subscribe_raw_gps()
    assert info.value.code is Code.FAILED_PRECONDITION


def test_connection_service_streams_heartbeats():
    dispatcher = MessageDispatcher()
    stream = ConnectionService(make_context(dispatcher)).subscribe_heartbeat()
    before = time.time_ns() // 1_000_000
    assert dispatcher.dispatch(heartbeat_frame()) == 1
    response = next(stream)
    after = time.time_ns() // 1_000_000
    assert response.system_id == 1
    assert response.heartbeat == heartbeat_to_proto(PX4_HEARTBEAT)
    assert before <= response.timestamp_ms <= after
    dispatcher.stop()
    assert list(stream) == []


def test_closing_stream_unsubscribes():
    dispatcher = MessageDispatcher()
    stream = TelemetryService(make_context(dispatcher)).subscribe_raw_gps()
    stream.close()
    assert dispatcher.dispatch(gps_frame()) == 0
    assert list(stream) == []


def test_telemetry_service_streams_gps():
    dispatcher = MessageDispatcher()
    stream = TelemetryService(make_context(dispatcher)).subscribe_raw_gps()
    dispatcher.dispatch(heartbeat_frame())
    dispatcher.dispatch(gps_frame())
    dispatcher.stop()
    responses = list(stream)
    assert [r.gps_raw_int for r in responses] == [gps_raw_int_to_proto(GPS)]


def test_handler_paths():
    dispatcher = MessageDispatcher()
    path, _ = connection_service_handler(ConnectionService(make_context(dispatcher)))
    assert path == "/flightpath.ConnectionService/"
    path, _ = telemetry_service_handler(TelemetryService(make_context(dispatcher)))
    assert path == "/flightpath.TelemetryService/"


def test_handler_streams_messages_then_end_of_stream():
    dispatcher = MessageDispatcher()
    _, app = connection_service_handler(ConnectionService(make_context(dispatcher)))
    captured, result = call(app, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE, encode_envelope(b"{}"))
    dispatcher.dispatch(heartbeat_frame())
    dispatcher.stop()
    envelopes = decode_envelopes(b"".join(result))
    assert captured["status"] == "200 OK"
    assert captured["headers"]["Content-Type"] == STREAM_JSON_CONTENT_TYPE
    assert len(envelopes) == 2
    message = SubscribeHeartbeatResponse.from_dict(json.loads(envelopes[0].payload))
    assert message.heartbeat == heartbeat_to_proto(PX4_HEARTBEAT)
    assert envelopes[1] == Envelope(FLAG_END_STREAM, b"{}")


def test_handler_accepts_gzip_request():
    dispatcher = MessageDispatcher()
    _, app = telemetry_service_handler(TelemetryService(make_context(dispatcher)))
    body = encode_envelope(gzip.compress(b"{}"), FLAG_COMPRESSED)
    _, result = call(
        app, TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE, body,
        extra={"HTTP_CONNECT_CONTENT_ENCODING": "gzip"},
    )
    dispatcher.dispatch(gps_frame())
    dispatcher.stop()
    envelopes = decode_envelopes(b"".join(result))
    assert json.loads(envelopes[0].payload)["gpsRawInt"]["lon"] == 85455940
    assert envelopes[-1].flags == FLAG_END_STREAM


def test_handler_reports_missing_dispatcher_in_end_of_stream():
    _, app = connection_service_handler(ConnectionService(make_context(None)))
    captured, result = call(app, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE, encode_envelope(b"{}"))
    envelopes = decode_envelopes(b"".join(result))
    assert captured["status"] == "200 OK"
    assert len(envelopes) == 1
    assert json.loads(envelopes[0].payload) == {"error": {"code": "failed_precondition"}}


@pytest.mark.parametrize(
    "body, extra, code",
    [
        (b"garbage", {}, "invalid_argument"),
        (encode_envelope(b"[1]"), {}, "invalid_argument"),
        (encode_envelope(b"{}", FLAG_COMPRESSED), {}, "invalid_argument"),
        (encode_envelope(b"{}"), {"HTTP_CONNECT_CONTENT_ENCODING": "br"}, "unimplemented"),
    ],
)
def test_handler_rejects_bad_requests(body, extra, code):
    dispatcher = MessageDispatcher()
    _, app = connection_service_handler(ConnectionService(make_context(dispatcher)))
    _, result = call(app, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE, body, extra=extra)
    envelopes = decode_envelopes(b"".join(result))
    assert envelopes[-1].flags == FLAG_END_STREAM
    assert json.loads(envelopes[-1].payload)["error"]["code"] == code
    assert dispatcher.dispatch(heartbeat_frame()) == 0


def test_handler_unknown_procedure_is_not_found():
    _, app = connection_service_handler(ConnectionService(make_context(MessageDispatcher())))
    captured, result = call(app, "/flightpath.ConnectionService/Other", encode_envelope(b"{}"))
    assert captured["status"] == "404 Not Found"
    assert b"".join(result) == NOT_FOUND_BODY


def test_handler_rejects_get():
    _, app = connection_service_handler(ConnectionService(make_context(MessageDispatcher())))
    captured, _ = call(app, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE, method="GET")
    assert captured["status"] == "405 Method Not Allowed"
    assert captured["headers"]["Allow"] == "POST"


def test_handler_rejects_binary_codec():
    _, app = connection_service_handler(ConnectionService(make_context(MessageDispatcher())))
    captured, _ = call(
        app, CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE, encode_envelope(b""),
        content_type="application/connect+proto",
    )
    assert captured["status"] == "415 Unsupported Media Type"
    assert captured["headers"]["Accept-Post"] == STREAM_JSON_CONTENT_TYPE


def test_connect_error_dict_includes_message_only_when_set():
    assert ConnectError(Code.INTERNAL).to_dict() == {"code": "internal"}
    assert ConnectError("unavailable", "down").to_dict() == {"code": "unavailable", "message": "down"}
    with pytest.raises(ValueError):
        ConnectError("no_such_code")