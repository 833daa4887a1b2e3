"""MAVLink HEARTBEAT and GPS_RAW_INT messages and their conversion to API messages."""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, Optional, TypeVar, Union

from flightpath.node import RawFrame

# MAV_AUTOPILOT value identifying a PX4 autopilot.
MAV_AUTOPILOT_PX4 = 12

# MAV_MODE_FLAG bits of the HEARTBEAT base_mode field.
MAV_MODE_FLAG_SAFETY_ARMED = 0x80
MAV_MODE_FLAG_MANUAL_INPUT_ENABLED = 0x40
MAV_MODE_FLAG_HIL_ENABLED = 0x20
MAV_MODE_FLAG_STABILIZE_ENABLED = 0x10
MAV_MODE_FLAG_GUIDED_ENABLED = 0x08
MAV_MODE_FLAG_AUTO_ENABLED = 0x04
MAV_MODE_FLAG_TEST_ENABLED = 0x02
MAV_MODE_FLAG_CUSTOM_MODE_ENABLED = 0x01


class GpsFixType(IntEnum):
    """GPS fix type; MAVLink GPS_FIX_TYPE shifted up by one to make room for UNSPECIFIED."""

    UNSPECIFIED = 0
    NO_GPS = 1
    NO_FIX = 2
    FIX_2D = 3
    FIX_3D = 4
    DGPS = 5
    RTK_FLOAT = 6
    RTK_FIXED = 7
    STATIC = 8
    PPP = 9


class MainMode(IntEnum):
    """PX4 main flight mode (bits 16-23 of custom_mode)."""

    UNSPECIFIED = 0
    MANUAL = 1
    ALTCTL = 2
    POSCTL = 3
    AUTO = 4
    ACRO = 5
    OFFBOARD = 6
    STABILIZED = 7
    RATTITUDE = 8
    SIMPLE = 9
    TERMINATION = 10


class SubMode(IntEnum):
    """PX4 flight sub-mode (bits 24-31 of custom_mode)."""

    UNSPECIFIED = 0
    AUTO_READY = 1
    AUTO_TAKEOFF = 2
    AUTO_LOITER = 3
    AUTO_MISSION = 4
    AUTO_RTL = 5
    AUTO_LAND = 6
    AUTO_RESERVED_DO_NOT_USE = 7
    AUTO_FOLLOW_TARGET = 8
    AUTO_PRECLAND = 9
    AUTO_VTOL_TAKEOFF = 10


_E = TypeVar("_E", bound=IntEnum)


def _as_enum(enum_class: type[_E], value: int) -> Union[_E, int]:
    """Return the enum member for ``value``, or the plain number if there is none."""
    try:
        return enum_class(value)
    except ValueError:
        return value


_HEARTBEAT = struct.Struct("<IBBBBB")
_GPS_RAW_INT = struct.Struct("<QiiiHHHHBBiIIIIH")


def _fit(payload: bytes, size: int) -> bytes:
    # MAVLink 2 strips trailing zeros, so short payloads are zero-padded.
    return bytes(payload[:size]).ljust(size, b"\x00")


@dataclass(frozen=True)
class HeartbeatMessage:
    """The MAVLink HEARTBEAT message as it travels on the wire."""

    MESSAGE_ID: ClassVar[int] = 0

    type: int = 0
    autopilot: int = 0
    base_mode: int = 0
    custom_mode: int = 0
    system_status: int = 0
    mavlink_version: int = 3

    @classmethod
    def unpack(cls, payload: bytes) -> HeartbeatMessage:
        """Decode a HEARTBEAT payload."""
        custom_mode, mav_type, autopilot, base_mode, status, version = _HEARTBEAT.unpack(
            _fit(payload, _HEARTBEAT.size)
        )
        return cls(
            type=mav_type,
            autopilot=autopilot,
            base_mode=base_mode,
            custom_mode=custom_mode,
            system_status=status,
            mavlink_version=version,
        )

    def pack(self) -> bytes:
        """Encode the message as a full-length payload."""
        return _HEARTBEAT.pack(
            self.custom_mode,
            self.type,
            self.autopilot,
            self.base_mode,
            self.system_status,
            self.mavlink_version,
        )


@dataclass(frozen=True)
class GpsRawIntMessage:
    """The MAVLink GPS_RAW_INT message as it travels on the wire."""

    MESSAGE_ID: ClassVar[int] = 24

    time_usec: int = 0
    fix_type: int = 0
    lat: int = 0
    lon: int = 0
    alt: int = 0
    eph: int = 0
    epv: int = 0
    vel: int = 0
    cog: int = 0
    satellites_visible: int = 0
    alt_ellipsoid: int = 0
    h_acc: int = 0
    v_acc: int = 0
    vel_acc: int = 0
    hdg_acc: int = 0
    yaw: int = 0

    @classmethod
    def unpack(cls, payload: bytes) -> GpsRawIntMessage:
        """Decode a GPS_RAW_INT payload; missing extension fields read as zero."""
        (
            time_usec, lat, lon, alt, eph, epv, vel, cog, fix_type, satellites,
            alt_ellipsoid, h_acc, v_acc, vel_acc, hdg_acc, yaw,
        ) = _GPS_RAW_INT.unpack(_fit(payload, _GPS_RAW_INT.size))
        return cls(
            time_usec=time_usec,
            fix_type=fix_type,
            lat=lat,
            lon=lon,
            alt=alt,
            eph=eph,
            epv=epv,
            vel=vel,
            cog=cog,
            satellites_visible=satellites,
            alt_ellipsoid=alt_ellipsoid,
            h_acc=h_acc,
            v_acc=v_acc,
            vel_acc=vel_acc,
            hdg_acc=hdg_acc,
            yaw=yaw,
        )

    def pack(self) -> bytes:
        """Encode the message as a full-length payload, extensions included."""
        return _GPS_RAW_INT.pack(
            self.time_usec, self.lat, self.lon, self.alt,
            self.eph, self.epv, self.vel, self.cog,
            self.fix_type, self.satellites_visible,
            self.alt_ellipsoid, self.h_acc, self.v_acc, self.vel_acc, self.hdg_acc, self.yaw,
        )


Message = Union[HeartbeatMessage, GpsRawIntMessage]

_DECODERS: dict[int, Callable[[bytes], Message]] = {
    HeartbeatMessage.MESSAGE_ID: HeartbeatMessage.unpack,
    GpsRawIntMessage.MESSAGE_ID: GpsRawIntMessage.unpack,
}


@dataclass(frozen=True)
class MavlinkFrame:
    """A received frame with its message decoded when the message type is known."""

    system_id: int
    component_id: int
    message_id: int
    message: Optional[Message] = None

    @classmethod
    def from_raw(cls, raw: RawFrame) -> MavlinkFrame:
        """Decode the payload of ``raw``; unknown messages are left as None."""
        decoder = _DECODERS.get(raw.message_id)
        return cls(
            system_id=raw.system_id,
            component_id=raw.component_id,
            message_id=raw.message_id,
            message=decoder(raw.payload) if decoder else None,
        )


@dataclass(frozen=True)
class BaseMode:
    """The base_mode bitfield broken out into flags."""

    custom_mode_enabled: bool = False
    test_enabled: bool = False
    auto_enabled: bool = False
    guided_enabled: bool = False
    stabilize_enabled: bool = False
    hil_enabled: bool = False
    manual_input_enabled: bool = False
    safety_armed: bool = False


@dataclass(frozen=True)
class CustomMode:
    """Autopilot-specific flight mode; unspecified unless the autopilot is PX4."""

    main_mode: int = MainMode.UNSPECIFIED
    sub_mode: int = SubMode.UNSPECIFIED


@dataclass(frozen=True)
class Heartbeat:
    """A HEARTBEAT with decoded mode information."""

    type: int = 0
    autopilot: int = 0
    base_mode: BaseMode = field(default_factory=BaseMode)
    custom_mode: CustomMode = field(default_factory=CustomMode)
    system_status: int = 0
    mavlink_version: int = 0


@dataclass(frozen=True)
class GpsRawInt:
    """A GPS_RAW_INT with the fix type in API numbering."""

    time_usec: int = 0
    fix_type: int = GpsFixType.UNSPECIFIED
    lat: int = 0
    lon: int = 0
    alt: int = 0
    eph: int = 0
    epv: int = 0
    vel: int = 0
    cog: int = 0
    satellites_visible: int = 0
    alt_ellipsoid: int = 0
    h_acc: int = 0
    v_acc: int = 0
    vel_acc: int = 0
    hdg_acc: int = 0
    yaw: int = 0


def base_mode_from_flags(flags: int) -> BaseMode:
    """Break the low byte of a MAV_MODE_FLAG bitfield into a BaseMode."""
    flags &= 0xFF
    return BaseMode(
        custom_mode_enabled=bool(flags & MAV_MODE_FLAG_CUSTOM_MODE_ENABLED),
        test_enabled=bool(flags & MAV_MODE_FLAG_TEST_ENABLED),
        auto_enabled=bool(flags & MAV_MODE_FLAG_AUTO_ENABLED),
        guided_enabled=bool(flags & MAV_MODE_FLAG_GUIDED_ENABLED),
        stabilize_enabled=bool(flags & MAV_MODE_FLAG_STABILIZE_ENABLED),
        hil_enabled=bool(flags & MAV_MODE_FLAG_HIL_ENABLED),
        manual_input_enabled=bool(flags & MAV_MODE_FLAG_MANUAL_INPUT_ENABLED),
        safety_armed=bool(flags & MAV_MODE_FLAG_SAFETY_ARMED),
    )


def _px4_modes(custom_mode: int) -> tuple[int, int]:
    custom_mode &= 0xFFFFFFFF
    return (custom_mode >> 16) & 0xFF, (custom_mode >> 24) & 0xFF


def custom_mode_from_raw(custom_mode: int, autopilot: int) -> CustomMode:
    """Decode custom_mode for PX4; other autopilots get unspecified modes."""
    if autopilot != MAV_AUTOPILOT_PX4:
        return CustomMode()
    main, sub = _px4_modes(custom_mode)
    return CustomMode(main_mode=_as_enum(MainMode, main), sub_mode=_as_enum(SubMode, sub))


def gps_fix_type_to_proto(fix_type: int) -> Union[GpsFixType, int]:
    """Map a MAVLink GPS_FIX_TYPE to the API numbering (one higher)."""
    return _as_enum(GpsFixType, fix_type + 1)


def _main_mode_label(value: int) -> str:
    mode = _as_enum(MainMode, value)
    return mode.name if isinstance(mode, MainMode) else str(value)


def _sub_mode_label(value: int) -> str:
    mode = _as_enum(SubMode, value)
    if not isinstance(mode, SubMode):
        return str(value)
    for prefix in ("AUTO_", "POSCTL_"):
        if mode.name.startswith(prefix):
            return mode.name[len(prefix):]
    return mode.name


def decode_px4_custom_mode(custom_mode: int) -> dict[str, str]:
    """Describe a PX4 custom_mode: main mode in bits 16-23, sub mode in bits 24-31."""
    main, sub = _px4_modes(custom_mode)
    return {
        "raw": f"0x{custom_mode & 0xFFFFFFFF:08X}",
        "main_mode": f"0x{main:02X}",
        "main_mode_str": _main_mode_label(main),
        "sub_mode": f"0x{sub:02X}",
        "sub_mode_str": _sub_mode_label(sub),
    }


def heartbeat_to_proto(msg: HeartbeatMessage) -> Heartbeat:
    """Convert a wire HEARTBEAT into the API Heartbeat."""
    return Heartbeat(
        type=msg.type,
        autopilot=msg.autopilot,
        base_mode=base_mode_from_flags(msg.base_mode),
        custom_mode=custom_mode_from_raw(msg.custom_mode, msg.autopilot),
        system_status=msg.system_status,
        mavlink_version=msg.mavlink_version,
    )


def gps_raw_int_to_proto(msg: GpsRawIntMessage) -> GpsRawInt:
    """Convert a wire GPS_RAW_INT into the API GpsRawInt."""
    return GpsRawInt(
        time_usec=msg.time_usec,
        fix_type=gps_fix_type_to_proto(msg.fix_type),
        lat=msg.lat,
        lon=msg.lon,
        alt=msg.alt,
        eph=msg.eph,
        epv=msg.epv,
        vel=msg.vel,
        cog=msg.cog,
        satellites_visible=msg.satellites_visible,
        alt_ellipsoid=msg.alt_ellipsoid,
        h_acc=msg.h_acc,
        v_acc=msg.v_acc,
        vel_acc=msg.vel_acc,
        hdg_acc=msg.hdg_acc,
        yaw=msg.yaw,
    )