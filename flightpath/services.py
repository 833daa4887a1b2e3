"""Streaming RPC services and their Connect-protocol HTTP handlers."""

from __future__ import annotations

import gzip
import json
import logging
import struct
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, BinaryIO, Generic, NamedTuple, Optional, TypeVar, Union

from flightpath.config import Config
from flightpath.converters import (
    BaseMode,
    CustomMode,
    GpsFixType,
    GpsRawInt,
    Heartbeat,
    MainMode,
    SubMode,
)
from flightpath.dispatcher import (
    GpsRawIntEvent,
    HeartbeatEvent,
    MessageDispatcher,
    Subscription,
    SubscriptionClosed,
)
from flightpath.server import NOT_FOUND_BODY

CONNECTION_SERVICE_NAME = "flightpath.ConnectionService"
CONNECTION_SERVICE_PATH = f"/{CONNECTION_SERVICE_NAME}/"
CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE = f"/{CONNECTION_SERVICE_NAME}/SubscribeHeartbeat"

TELEMETRY_SERVICE_NAME = "flightpath.TelemetryService"
TELEMETRY_SERVICE_PATH = f"/{TELEMETRY_SERVICE_NAME}/"
TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE = f"/{TELEMETRY_SERVICE_NAME}/SubscribeRawGps"

STREAM_JSON_CONTENT_TYPE = "application/connect+json"

FLAG_COMPRESSED = 0x01
FLAG_END_STREAM = 0x02

_PREFIX = struct.Struct(">BI")

WSGIApp = Callable[..., Iterable[bytes]]
T = TypeVar("T")


class Code(str, Enum):
    """Connect error codes."""

    CANCELED = "canceled"
    UNKNOWN = "unknown"
    INVALID_ARGUMENT = "invalid_argument"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    FAILED_PRECONDITION = "failed_precondition"
    ABORTED = "aborted"
    OUT_OF_RANGE = "out_of_range"
    UNIMPLEMENTED = "unimplemented"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"
    DATA_LOSS = "data_loss"
    UNAUTHENTICATED = "unauthenticated"


class ConnectError(Exception):
    """An RPC error carrying a Connect error code."""

    def __init__(self, code: Union[Code, str], message: str = "") -> None:
        self.code = Code(code)
        self.message = message
        super().__init__(f"{self.code.value}: {message}" if message else self.code.value)

    def to_dict(self) -> dict[str, str]:
        """Return the error as it appears in a Connect end-of-stream message."""
        error = {"code": self.code.value}
        if self.message:
            error["message"] = self.message
        return error


@dataclass
class ServiceContext:
    """Dependencies shared by all services."""

    config: Optional[Config] = None
    logger: Optional[logging.Logger] = None
    node: Any = None
    dispatcher: Optional[MessageDispatcher] = None


# ---------------------------------------------------------------- JSON mapping

_E = TypeVar("_E", bound=IntEnum)


def _int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"expected an integer, got {value!r}")
    return int(value)


def _bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected a boolean, got {value!r}")
    return value


def _object(value: Any) -> dict:
    if not isinstance(value, dict):
        raise ValueError(f"expected an object, got {value!r}")
    return value


def _enum_to_json(value: int, enum_class: type[IntEnum], prefix: str) -> Union[str, int]:
    if isinstance(value, enum_class):
        return prefix + value.name
    try:
        return prefix + enum_class(value).name
    except ValueError:
        return int(value)


def _enum_from_json(value: Any, enum_class: type[_E], prefix: str) -> Union[_E, int]:
    if isinstance(value, str) and not value.lstrip("-").isdigit():
        name = value[len(prefix):] if value.startswith(prefix) else None
        if name is None or name not in enum_class.__members__:
            raise ValueError(f"unknown {enum_class.__name__} value {value!r}")
        return enum_class[name]
    number = _int(value)
    try:
        return enum_class(number)
    except ValueError:
        return number


_BASE_MODE_KEYS = (
    ("custom_mode_enabled", "customModeEnabled"),
    ("test_enabled", "testEnabled"),
    ("auto_enabled", "autoEnabled"),
    ("guided_enabled", "guidedEnabled"),
    ("stabilize_enabled", "stabilizeEnabled"),
    ("hil_enabled", "hilEnabled"),
    ("manual_input_enabled", "manualInputEnabled"),
    ("safety_armed", "safetyArmed"),
)

_GPS_INT_KEYS = (
    ("lat", "lat"),
    ("lon", "lon"),
    ("alt", "alt"),
    ("eph", "eph"),
    ("epv", "epv"),
    ("vel", "vel"),
    ("cog", "cog"),
    ("satellites_visible", "satellitesVisible"),
    ("alt_ellipsoid", "altEllipsoid"),
    ("h_acc", "hAcc"),
    ("v_acc", "vAcc"),
    ("vel_acc", "velAcc"),
    ("hdg_acc", "hdgAcc"),
    ("yaw", "yaw"),
)


def _heartbeat_to_json(hb: Heartbeat) -> dict[str, Any]:
    return {
        "type": int(hb.type),
        "autopilot": int(hb.autopilot),
        "baseMode": {key: getattr(hb.base_mode, attr) for attr, key in _BASE_MODE_KEYS},
        "customMode": {
            "mainMode": _enum_to_json(hb.custom_mode.main_mode, MainMode, "MAIN_MODE_"),
            "subMode": _enum_to_json(hb.custom_mode.sub_mode, SubMode, "SUB_MODE_"),
        },
        "systemStatus": int(hb.system_status),
        "mavlinkVersion": int(hb.mavlink_version),
    }


def _heartbeat_from_json(data: Any) -> Heartbeat:
    data = _object(data)
    base = _object(data.get("baseMode", {}))
    custom = _object(data.get("customMode", {}))
    return Heartbeat(
        type=_int(data.get("type", 0)),
        autopilot=_int(data.get("autopilot", 0)),
        base_mode=BaseMode(**{attr: _bool(base.get(key, False)) for attr, key in _BASE_MODE_KEYS}),
        custom_mode=CustomMode(
            main_mode=_enum_from_json(custom.get("mainMode", 0), MainMode, "MAIN_MODE_"),
            sub_mode=_enum_from_json(custom.get("subMode", 0), SubMode, "SUB_MODE_"),
        ),
        system_status=_int(data.get("systemStatus", 0)),
        mavlink_version=_int(data.get("mavlinkVersion", 0)),
    )


def _gps_raw_int_to_json(gps: GpsRawInt) -> dict[str, Any]:
    result: dict[str, Any] = {
        "timeUsec": str(int(gps.time_usec)),
        "fixType": _enum_to_json(gps.fix_type, GpsFixType, "GPS_FIX_TYPE_"),
    }
    result.update({key: int(getattr(gps, attr)) for attr, key in _GPS_INT_KEYS})
    return result


def _gps_raw_int_from_json(data: Any) -> GpsRawInt:
    data = _object(data)
    return GpsRawInt(
        time_usec=_int(data.get("timeUsec", 0)),
        fix_type=_enum_from_json(data.get("fixType", 0), GpsFixType, "GPS_FIX_TYPE_"),
        **{attr: _int(data.get(key, 0)) for attr, key in _GPS_INT_KEYS},
    )


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class SubscribeHeartbeatResponse:
    """One streamed HEARTBEAT with its receive time and sender IDs."""

    timestamp_ms: int = 0
    system_id: int = 0
    component_id: int = 0
    heartbeat: Optional[Heartbeat] = None

    def to_dict(self) -> dict[str, Any]:
        """Return the message in its JSON form."""
        result: dict[str, Any] = {
            "timestampMs": str(self.timestamp_ms),
            "systemId": self.system_id,
            "componentId": self.component_id,
        }
        if self.heartbeat is not None:
            result["heartbeat"] = _heartbeat_to_json(self.heartbeat)
        return result

    @staticmethod
    def from_dict(data: Any) -> SubscribeHeartbeatResponse:
        """Build the message from its JSON form; raises ValueError if malformed."""
        data = _object(data)
        heartbeat = data.get("heartbeat")
        return SubscribeHeartbeatResponse(
            timestamp_ms=_int(data.get("timestampMs", 0)),
            system_id=_int(data.get("systemId", 0)),
            component_id=_int(data.get("componentId", 0)),
            heartbeat=None if heartbeat is None else _heartbeat_from_json(heartbeat),
        )


@dataclass(frozen=True)
class SubscribeRawGpsResponse:
    """One streamed GPS_RAW_INT with its receive time and sender IDs."""

    timestamp_ms: int = 0
    system_id: int = 0
    component_id: int = 0
    gps_raw_int: Optional[GpsRawInt] = None

    def to_dict(self) -> dict[str, Any]:
        """Return the message in its JSON form."""
        result: dict[str, Any] = {
            "timestampMs": str(self.timestamp_ms),
            "systemId": self.system_id,
            "componentId": self.component_id,
        }
        if self.gps_raw_int is not None:
            result["gpsRawInt"] = _gps_raw_int_to_json(self.gps_raw_int)
        return result

    @staticmethod
    def from_dict(data: Any) -> SubscribeRawGpsResponse:
        """Build the message from its JSON form; raises ValueError if malformed."""
        data = _object(data)
        gps = data.get("gpsRawInt")
        return SubscribeRawGpsResponse(
            timestamp_ms=_int(data.get("timestampMs", 0)),
            system_id=_int(data.get("systemId", 0)),
            component_id=_int(data.get("componentId", 0)),
            gps_raw_int=None if gps is None else _gps_raw_int_from_json(gps),
        )


# -------------------------------------------------------------------- services


class ResponseStream(Generic[T]):
    """Iterates converted events of a subscription until it closes."""

    def __init__(self, subscription: Subscription, convert: Callable[[Any], T]) -> None:
        self._subscription = subscription
        self._convert = convert

    def __iter__(self) -> ResponseStream[T]:
        return self

    def __next__(self) -> T:
        try:
            event = self._subscription.get()
        except SubscriptionClosed:
            raise StopIteration from None
        return self._convert(event)

    def close(self) -> None:
        """Unsubscribe; the stream ends once buffered events are read."""
        self._subscription.close()

    def __enter__(self) -> ResponseStream[T]:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _require_dispatcher(ctx: ServiceContext) -> MessageDispatcher:
    if ctx.dispatcher is None:
        raise ConnectError(Code.FAILED_PRECONDITION)
    return ctx.dispatcher


class ConnectionService:
    """Streams HEARTBEAT messages received over MAVLink."""

    def __init__(self, ctx: ServiceContext) -> None:
        self.ctx = ctx

    def subscribe_heartbeat(self) -> ResponseStream[SubscribeHeartbeatResponse]:
        """Subscribe now and return the stream of heartbeats."""
        subscription = _require_dispatcher(self.ctx).subscribe_heartbeat()

        def convert(event: HeartbeatEvent) -> SubscribeHeartbeatResponse:
            return SubscribeHeartbeatResponse(
                timestamp_ms=_now_ms(),
                system_id=event.system_id,
                component_id=event.component_id,
                heartbeat=event.heartbeat,
            )

        return ResponseStream(subscription, convert)


class TelemetryService:
    """Streams GPS_RAW_INT messages received over MAVLink."""

    def __init__(self, ctx: ServiceContext) -> None:
        self.ctx = ctx

    def subscribe_raw_gps(self) -> ResponseStream[SubscribeRawGpsResponse]:
        """Subscribe now and return the stream of raw GPS readings."""
        subscription = _require_dispatcher(self.ctx).subscribe_gps_raw_int()

        def convert(event: GpsRawIntEvent) -> SubscribeRawGpsResponse:
            return SubscribeRawGpsResponse(
                timestamp_ms=_now_ms(),
                system_id=event.system_id,
                component_id=event.component_id,
                gps_raw_int=event.gps_raw_int,
            )

        return ResponseStream(subscription, convert)


# ---------------------------------------------------------------- wire framing


class Envelope(NamedTuple):
    """One length-prefixed message of a Connect stream."""

    flags: int
    payload: bytes


def encode_envelope(payload: bytes, flags: int = 0) -> bytes:
    """Prefix ``payload`` with its flags byte and big-endian 32-bit length."""
    return _PREFIX.pack(flags, len(payload)) + bytes(payload)


def decode_envelopes(data: bytes) -> list[Envelope]:
    """Split a complete stream body into envelopes; raises ValueError if truncated."""
    data = bytes(data)
    envelopes = []
    offset = 0
    while offset < len(data):
        if len(data) - offset < _PREFIX.size:
            raise ValueError("truncated envelope prefix")
        flags, length = _PREFIX.unpack_from(data, offset)
        start = offset + _PREFIX.size
        end = start + length
        if end > len(data):
            raise ValueError(f"truncated envelope: {len(data) - start} of {length} bytes")
        envelopes.append(Envelope(flags, data[start:end]))
        offset = end
    return envelopes


def iter_envelopes(reader: BinaryIO) -> Iterator[Envelope]:
    """Read envelopes from a binary stream as they arrive."""

    def read_exactly(size: int) -> bytes:
        chunks = bytearray()
        while len(chunks) < size:
            chunk = reader.read(size - len(chunks))
            if not chunk:
                break
            chunks += chunk
        return bytes(chunks)

    while True:
        prefix = read_exactly(_PREFIX.size)
        if not prefix:
            return
        if len(prefix) < _PREFIX.size:
            raise ValueError("truncated envelope prefix")
        flags, length = _PREFIX.unpack(prefix)
        payload = read_exactly(length)
        if len(payload) < length:
            raise ValueError(f"truncated envelope: {len(payload)} of {length} bytes")
        yield Envelope(flags, payload)


def _dumps(data: Any) -> bytes:
    return json.dumps(data, separators=(",", ":")).encode()


def _end_stream(error: Optional[ConnectError]) -> bytes:
    body = {} if error is None else {"error": error.to_dict()}
    return encode_envelope(_dumps(body), FLAG_END_STREAM)


# ---------------------------------------------------------------- HTTP handlers


def _read_request(environ: dict) -> dict:
    """Read the single request message of a server-streaming call."""
    encoding = environ.get("HTTP_CONNECT_CONTENT_ENCODING", "identity") or "identity"
    if encoding not in ("identity", "gzip"):
        raise ConnectError(Code.UNIMPLEMENTED, f"unknown compression {encoding!r}")

    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    body = environ["wsgi.input"].read(length) if length > 0 else b""

    try:
        envelopes = decode_envelopes(body)
    except ValueError as exc:
        raise ConnectError(Code.INVALID_ARGUMENT, str(exc)) from exc
    if len(envelopes) != 1 or envelopes[0].flags & FLAG_END_STREAM:
        raise ConnectError(Code.INVALID_ARGUMENT, "expected exactly one request message")

    flags, payload = envelopes[0]
    if flags & FLAG_COMPRESSED:
        if encoding == "identity":
            raise ConnectError(
                Code.INVALID_ARGUMENT,
                "received compressed message without Connect-Content-Encoding",
            )
        try:
            payload = gzip.decompress(payload)
        except (OSError, EOFError) as exc:
            raise ConnectError(Code.INVALID_ARGUMENT, f"bad gzip payload: {exc}") from exc

    try:
        message = json.loads(payload or b"{}")
    except ValueError as exc:
        raise ConnectError(Code.INVALID_ARGUMENT, f"unmarshal request: {exc}") from exc
    if not isinstance(message, dict):
        raise ConnectError(Code.INVALID_ARGUMENT, "request must be a JSON object")
    return message


class _StreamBody:
    """Response body of a server stream: messages, then the end-of-stream message."""

    def __init__(self, responses: Optional[Iterator[Any]], error: Optional[ConnectError]) -> None:
        self._responses = responses
        self._error = error

    def __iter__(self) -> Iterator[bytes]:
        error = self._error
        if self._responses is not None and error is None:
            try:
                for response in self._responses:
                    yield encode_envelope(_dumps(response.to_dict()))
            except ConnectError as exc:
                error = exc
            except Exception as exc:
                error = ConnectError(Code.UNKNOWN, str(exc))
            finally:
                self.close()
        yield _end_stream(error)

    def close(self) -> None:
        close = getattr(self._responses, "close", None)
        if close is not None:
            close()


def _plain(start_response: Callable, status: str, headers: list[tuple[str, str]],
           body: bytes = b"") -> list[bytes]:
    start_response(status, headers + [("Content-Length", str(len(body)))])
    return [body]


def _server_stream_app(procedure: str, open_stream: Callable[[], Iterator[Any]]) -> WSGIApp:
    def app(environ: dict, start_response: Callable) -> Iterable[bytes]:
        if environ.get("PATH_INFO") != procedure:
            return _plain(
                start_response,
                "404 Not Found",
                [("Content-Type", "text/plain; charset=utf-8"), ("X-Content-Type-Options", "nosniff")],
                NOT_FOUND_BODY,
            )
        if environ.get("REQUEST_METHOD") != "POST":
            return _plain(start_response, "405 Method Not Allowed", [("Allow", "POST")])
        content_type = environ.get("CONTENT_TYPE", "").split(";", 1)[0].strip().lower()
        if content_type != STREAM_JSON_CONTENT_TYPE:
            return _plain(
                start_response,
                "415 Unsupported Media Type",
                [("Accept-Post", STREAM_JSON_CONTENT_TYPE)],
            )

        responses: Optional[Iterator[Any]] = None
        error: Optional[ConnectError] = None
        try:
            _read_request(environ)
            responses = open_stream()
        except ConnectError as exc:
            error = exc

        start_response("200 OK", [("Content-Type", STREAM_JSON_CONTENT_TYPE)])
        return _StreamBody(responses, error)

    return app


def connection_service_handler(service: ConnectionService) -> tuple[str, WSGIApp]:
    """Return the mount path and WSGI handler of the connection service."""
    return CONNECTION_SERVICE_PATH, _server_stream_app(
        CONNECTION_SUBSCRIBE_HEARTBEAT_PROCEDURE, service.subscribe_heartbeat
    )


def telemetry_service_handler(service: TelemetryService) -> tuple[str, WSGIApp]:
    """Return the mount path and WSGI handler of the telemetry service."""
    return TELEMETRY_SERVICE_PATH, _server_stream_app(
        TELEMETRY_SUBSCRIBE_RAW_GPS_PROCEDURE, service.subscribe_raw_gps
    )