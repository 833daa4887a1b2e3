"""Application configuration loaded from FLIGHTPATH_* environment variables."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional, Union

logger = logging.getLogger(__name__)

ENV_GRPC_PORT = "FLIGHTPATH_GRPC_PORT"
ENV_GRPC_HOST = "FLIGHTPATH_GRPC_HOST"
ENV_GRPC_CORS_ORIGINS = "FLIGHTPATH_GRPC_CORS_ORIGINS"
ENV_ENDPOINT_TYPE = "FLIGHTPATH_MAVLINK_ENDPOINT_TYPE"
ENV_SERIAL_DEVICE = "FLIGHTPATH_MAVLINK_SERIAL_DEVICE"
ENV_SERIAL_BAUD = "FLIGHTPATH_MAVLINK_SERIAL_BAUD"
ENV_UDP_ADDRESS = "FLIGHTPATH_MAVLINK_UDP_ADDRESS"
ENV_TCP_ADDRESS = "FLIGHTPATH_MAVLINK_TCP_ADDRESS"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_CORS_ORIGINS = ("http://localhost:5173", "http://localhost:3000")
DEFAULT_MAVLINK_ADDRESS = "0.0.0.0:14550"

_INTEGER = re.compile(r"[+-]?[0-9]+")


class ConfigError(ValueError):
    """Raised when the configuration is invalid."""


@dataclass(frozen=True)
class SerialEndpoint:
    """A serial port carrying MAVLink."""

    device: str
    baud: int


@dataclass(frozen=True)
class UdpServerEndpoint:
    """A UDP socket listening on ``address`` ("host:port")."""

    address: str


@dataclass(frozen=True)
class UdpClientEndpoint:
    """A UDP socket sending to ``address`` ("host:port")."""

    address: str


@dataclass(frozen=True)
class TcpServerEndpoint:
    """A TCP listener on ``address`` ("host:port")."""

    address: str


@dataclass(frozen=True)
class TcpClientEndpoint:
    """A TCP connection to ``address`` ("host:port")."""

    address: str


Endpoint = Union[
    SerialEndpoint,
    UdpServerEndpoint,
    UdpClientEndpoint,
    TcpServerEndpoint,
    TcpClientEndpoint,
]


@dataclass
class ServerConfig:
    """Settings of the RPC server."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))


@dataclass
class MAVLinkConfig:
    """Settings of the MAVLink connection; no endpoint means no connection."""

    endpoint: Optional[Endpoint] = None

    def validate(self) -> None:
        """Raise ConfigError if the endpoint lacks a required setting."""
        match self.endpoint:
            case None:
                return
            case SerialEndpoint(device=device, baud=baud):
                if not device:
                    raise ConfigError("serial device path is required")
                if baud <= 0:
                    raise ConfigError("serial baud rate must be greater than 0")
            case UdpServerEndpoint(address=address) if not address:
                raise ConfigError("UDP server address is required")
            case UdpClientEndpoint(address=address) if not address:
                raise ConfigError("UDP client address is required")
            case TcpServerEndpoint(address=address) if not address:
                raise ConfigError("TCP server address is required")
            case TcpClientEndpoint(address=address) if not address:
                raise ConfigError("TCP client address is required")


def _default_mavlink() -> MAVLinkConfig:
    return MAVLinkConfig(endpoint=UdpServerEndpoint(DEFAULT_MAVLINK_ADDRESS))


@dataclass
class Config:
    """The whole application configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    mavlink: MAVLinkConfig = field(default_factory=_default_mavlink)

    def validate(self) -> None:
        """Raise ConfigError if any setting is invalid."""
        port = self.server.port
        if port < 1 or port > 65535:
            raise ConfigError(f"invalid port: {port} (must be between 1 and 65535)")
        try:
            self.mavlink.validate()
        except ConfigError as exc:
            raise ConfigError(f"invalid MAVLink configuration: {exc}") from exc

    def server_addr(self) -> str:
        """Return the server address as "host:port"."""
        return f"{self.server.host}:{self.server.port}"


def default_config() -> Config:
    """Return the defaults used for local development."""
    return Config()


def _parse_int(text: str) -> Optional[int]:
    return int(text) if _INTEGER.fullmatch(text) else None


def _endpoint_from_env(environ: Mapping[str, str]) -> Optional[Endpoint]:
    """Return the endpoint the environment asks for, or None to keep the default."""
    kind = environ.get(ENV_ENDPOINT_TYPE, "")
    if kind == "serial":
        device = environ.get(ENV_SERIAL_DEVICE, "")
        baud_text = environ.get(ENV_SERIAL_BAUD, "")
        if not device or not baud_text:
            return None
        baud = _parse_int(baud_text)
        if baud is None or baud <= 0:
            return None
        return SerialEndpoint(device=device, baud=baud)

    address_classes = {
        "udp-server": (ENV_UDP_ADDRESS, UdpServerEndpoint),
        "udp-client": (ENV_UDP_ADDRESS, UdpClientEndpoint),
        "tcp-server": (ENV_TCP_ADDRESS, TcpServerEndpoint),
        "tcp-client": (ENV_TCP_ADDRESS, TcpClientEndpoint),
    }
    if kind not in address_classes:
        return None
    variable, endpoint_class = address_classes[kind]
    address = environ.get(variable, "")
    return endpoint_class(address) if address else None


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build the configuration from defaults overridden by the environment.

    Unparseable or incomplete overrides are ignored; the final configuration
    is validated and ConfigError is raised if it is invalid.
    """
    env = os.environ if environ is None else environ
    cfg = default_config()

    port = _parse_int(env.get(ENV_GRPC_PORT, ""))
    if port is not None:
        cfg.server.port = port

    host = env.get(ENV_GRPC_HOST, "")
    if host:
        cfg.server.host = host

    origins = env.get(ENV_GRPC_CORS_ORIGINS, "")
    if origins:
        cfg.server.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]

    endpoint = _endpoint_from_env(env)
    if endpoint is not None:
        cfg.mavlink.endpoint = endpoint

    cfg.validate()

    for line in describe_config(cfg):
        logger.info("%s", line)
    return cfg


def describe_config(config: Config) -> list[str]:
    """Return human-readable lines describing the configuration."""
    lines = [
        "=== Configuration ===",
        f"Server: {config.server.host}:{config.server.port}",
    ]
    if config.server.cors_origins:
        lines.append(f"CORS Origins: {', '.join(config.server.cors_origins)}")

    endpoint = config.mavlink.endpoint
    match endpoint:
        case None:
            lines.append("MAVLink: Not configured")
            return lines
        case SerialEndpoint(device=device, baud=baud):
            lines.append(f"MAVLink: Serial - Device: {device}, Baud: {baud}")
        case UdpServerEndpoint(address=address):
            lines.append(f"MAVLink: UDP Server - Address: {address}")
        case UdpClientEndpoint(address=address):
            lines.append(f"MAVLink: UDP Client - Address: {address}")
        case TcpServerEndpoint(address=address):
            lines.append(f"MAVLink: TCP Server - Address: {address}")
        case TcpClientEndpoint(address=address):
            lines.append(f"MAVLink: TCP Client - Address: {address}")
        case _:
            lines.append(f"MAVLink: Unknown endpoint type: {type(endpoint).__name__}")
    lines.append("====================")
    return lines