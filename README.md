# flightpath

flightpath listens to a drone over MAVLink (serial, UDP or TCP) and
republishes what it hears as streaming HTTP services. A client subscribes to
a stream and receives each HEARTBEAT or GPS_RAW_INT message as it arrives,
decoded into structured fields: vehicle type, autopilot, system status,
armed and mode flags, PX4 main and sub flight modes, GPS fix type, position,
altitude and accuracy.

## Installation

```
pip install .
```

Serial links use `pyserial`, which is installed with the package.

## Running the server

```
flightpath-server
```

With no configuration the server listens for MAVLink on UDP `0.0.0.0:14550`
(the usual PX4 SITL port) and serves HTTP on `0.0.0.0:8080`. It stops on
Ctrl+C or SIGTERM, then closes the MAVLink endpoint and ends every open
stream. It exits with status 1 if the configuration is invalid, the MAVLink
endpoint cannot be opened, or the HTTP port cannot be bound.

Two streaming procedures are served:

- `POST /flightpath.ConnectionService/SubscribeHeartbeat`
- `POST /flightpath.TelemetryService/SubscribeRawGps`

Requests and responses use the Connect streaming protocol with the JSON
codec (`Content-Type: application/connect+json`). The request body is one
envelope — a flags byte, a big-endian 32-bit length, then a JSON object
(`{}` will do); a gzip-compressed request is accepted when
`Connect-Content-Encoding: gzip` is sent. The response is a sequence of
envelopes, one per message, closed by an end-of-stream envelope (flag
`0x02`) that carries `{"error": {"code": ...}}` if the stream failed.

A heartbeat message looks like:

```json
{"timestampMs": "1700000000000", "systemId": 1, "componentId": 1,
 "heartbeat": {"type": 2, "autopilot": 12,
   "baseMode": {"customModeEnabled": true, "testEnabled": false, "autoEnabled": false,
                "guidedEnabled": false, "stabilizeEnabled": false, "hilEnabled": false,
                "manualInputEnabled": false, "safetyArmed": true},
   "customMode": {"mainMode": "MAIN_MODE_AUTO", "subMode": "SUB_MODE_AUTO_LOITER"},
   "systemStatus": 4, "mavlinkVersion": 3}}
```

Raw GPS messages carry `gpsRawInt` with `timeUsec` (as a string), `fixType`
(for example `"GPS_FIX_TYPE_FIX_3D"`), `lat`, `lon`, `alt`, `eph`, `epv`,
`vel`, `cog`, `satellitesVisible`, `altEllipsoid`, `hAcc`, `vAcc`, `velAcc`,
`hdgAcc` and `yaw`. The fix type is numbered one higher than MAVLink's
`GPS_FIX_TYPE`, leaving 0 for "unspecified".

Each subscriber has a buffer of 10 messages; while it is full, new messages
for that subscriber are dropped rather than holding up the others.

Every HTTP response carries CORS headers, and `OPTIONS` preflight requests
are answered directly. Each request is logged (method, path, status,
duration, bytes) through Python's `logging`, and an exception inside a
handler becomes a 500 response instead of a dropped connection.

## Configuration

All settings come from environment variables; anything unset keeps its
default. The final configuration is validated at start-up.

| Variable | Meaning | Default |
| --- | --- | --- |
| `FLIGHTPATH_GRPC_HOST` | HTTP listen host | `0.0.0.0` |
| `FLIGHTPATH_GRPC_PORT` | HTTP listen port (1–65535) | `8080` |
| `FLIGHTPATH_GRPC_CORS_ORIGINS` | comma-separated allowed origins, `*` for any | `http://localhost:5173,http://localhost:3000` |
| `FLIGHTPATH_MAVLINK_ENDPOINT_TYPE` | `serial`, `udp-server`, `udp-client`, `tcp-server` or `tcp-client` | UDP server |
| `FLIGHTPATH_MAVLINK_SERIAL_DEVICE` | serial device path | |
| `FLIGHTPATH_MAVLINK_SERIAL_BAUD` | serial baud rate | |
| `FLIGHTPATH_MAVLINK_UDP_ADDRESS` | `host:port` for UDP endpoints | `0.0.0.0:14550` |
| `FLIGHTPATH_MAVLINK_TCP_ADDRESS` | `host:port` for TCP endpoints | |

A port that is not a whole number is ignored. When an endpoint type is
chosen, every setting it needs must be present and valid; otherwise the
default endpoint is kept. An unknown endpoint type also keeps the default.

Serial radio example:

```
export FLIGHTPATH_MAVLINK_ENDPOINT_TYPE=serial
export FLIGHTPATH_MAVLINK_SERIAL_DEVICE=/dev/ttyUSB0
export FLIGHTPATH_MAVLINK_SERIAL_BAUD=57600
flightpath-server
```

## Watching the streams

```
flightpath-monitor
```

The monitor connects to `http://HOST:PORT` taken from the same
`FLIGHTPATH_GRPC_HOST` and `FLIGHTPATH_GRPC_PORT` settings, subscribes to
both streams and redraws a terminal dashboard with the latest heartbeat, the
latest GPS reading and a count of messages received per type. Stop it with
Ctrl+C; it exits with status 1 if a stream cannot be opened or fails.

## Using it as a library

- `flightpath.config` — `load_config`, `default_config`, `describe_config`,
  `Config`, `ServerConfig`, `MAVLinkConfig`, `ConfigError` and the endpoint
  classes `SerialEndpoint`, `UdpServerEndpoint`, `UdpClientEndpoint`,
  `TcpServerEndpoint`, `TcpClientEndpoint`.
- `flightpath.node` — `decode_frame` and `encode_frame` for MAVLink 1 and 2
  frames, `RawFrame`, and `MavlinkNode`, which reads frames from one endpoint
  on background threads and yields them from `events()`.
- `flightpath.converters` — `HeartbeatMessage` and `GpsRawIntMessage` with
  `pack`/`unpack`, `heartbeat_to_proto`, `gps_raw_int_to_proto`,
  `base_mode_from_flags`, `custom_mode_from_raw`, `gps_fix_type_to_proto`
  and `decode_px4_custom_mode`.
- `flightpath.dispatcher` — `MessageDispatcher` and `Subscription`.
- `flightpath.server` and `flightpath.middleware` — the WSGI `Server` and the
  `cors`, `request_logging` and `recovery` middleware.
- `flightpath.services` — `ConnectionService`, `TelemetryService`,
  `connection_service_handler`, `telemetry_service_handler`,
  `encode_envelope` and `decode_envelopes`.

```python
from flightpath.converters import HeartbeatMessage, decode_px4_custom_mode
from flightpath.dispatcher import MessageDispatcher
from flightpath.node import RawFrame

decode_px4_custom_mode(0x03040000)
# {'raw': '0x03040000', 'main_mode': '0x04', 'main_mode_str': 'AUTO',
#  'sub_mode': '0x03', 'sub_mode_str': 'LOITER'}

dispatcher = MessageDispatcher()
subscription = dispatcher.subscribe_heartbeat()
payload = HeartbeatMessage(type=2, autopilot=12, base_mode=0x81,
                           custom_mode=0x03040000).pack()
dispatcher.dispatch(RawFrame(message_id=0, payload=payload, system_id=1, component_id=1))
event = subscription.get(timeout=1)
event.heartbeat.base_mode.safety_armed     # True
event.heartbeat.custom_mode.main_mode      # MainMode.AUTO
```

## What it does not do

- It only receives MAVLink; it never sends messages or commands to the
  vehicle.
- Only HEARTBEAT and GPS_RAW_INT are decoded and streamed; other messages are
  read and discarded. Checksums are verified only for a small set of common
  messages, and frame signatures are kept but not checked.
- The HTTP side speaks HTTP/1.1 and the Connect protocol with JSON only: no
  binary protobuf, gRPC or gRPC-Web, and responses are not compressed.
- There is no monitor that reads MAVLink directly; `flightpath-monitor` needs
  a running server.

## Tests

```
pip install ".[test]"
pytest
```