"""MAVLink frame codec and a node that receives frames from one endpoint."""

from __future__ import annotations

import functools
import queue
import socket
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Optional

from flightpath.config import (
    Endpoint,
    SerialEndpoint,
    TcpClientEndpoint,
    TcpServerEndpoint,
    UdpClientEndpoint,
    UdpServerEndpoint,
)

MAGIC_V1 = 0xFE
MAGIC_V2 = 0xFD

# System ID used for outgoing traffic, so as to coexist with a GCS using 255.
OUT_SYSTEM_ID = 254

_V1_HEADER = 6
_V2_HEADER = 10
_CHECKSUM = 2
_SIGNATURE = 13
_INCOMPAT_SIGNED = 0x01
_MAX_PAYLOAD = 255

_POLL_SECONDS = 0.2
_CONNECT_TIMEOUT = 5.0
_RECONNECT_DELAY = 1.0
_JOIN_TIMEOUT = 2.0

# CRC_EXTRA seeds of common-dialect messages; frames of other messages are
# accepted without checksum verification.
CRC_EXTRA: dict[int, int] = {
    0: 50,  # HEARTBEAT
    1: 124,  # SYS_STATUS
    2: 137,  # SYSTEM_TIME
    4: 237,  # PING
    24: 24,  # GPS_RAW_INT
    30: 39,  # ATTITUDE
    33: 104,  # GLOBAL_POSITION_INT
    74: 20,  # VFR_HUD
    76: 152,  # COMMAND_LONG
    77: 143,  # COMMAND_ACK
    253: 83,  # STATUSTEXT
}


class FrameDecodeError(ValueError):
    """Raised when bytes do not hold a valid MAVLink frame."""


@dataclass(frozen=True)
class RawFrame:
    """A MAVLink frame with its payload left undecoded."""

    message_id: int
    payload: bytes
    system_id: int = 0
    component_id: int = 0
    sequence: int = 0
    version: int = 2
    incompat_flags: int = 0
    compat_flags: int = 0
    signature: bytes = b""


def _crc(data: bytes, extra: int) -> int:
    crc = 0xFFFF
    for byte in (*data, extra):
        tmp = (byte ^ crc) & 0xFF
        tmp = (tmp ^ (tmp << 4)) & 0xFF
        crc = ((crc >> 8) ^ (tmp << 8) ^ (tmp << 3) ^ (tmp >> 4)) & 0xFFFF
    return crc


def _check_length(data: bytes, total: int) -> None:
    if len(data) < total:
        raise FrameDecodeError(f"truncated frame: {len(data)} of {total} bytes")
    if len(data) > total:
        raise FrameDecodeError(f"{len(data) - total} trailing bytes after frame")


def decode_frame(data: bytes) -> RawFrame:
    """Decode exactly one MAVLink v1 or v2 frame."""
    data = bytes(data)
    if not data:
        raise FrameDecodeError("empty frame")

    magic = data[0]
    if magic == MAGIC_V1:
        if len(data) < _V1_HEADER:
            raise FrameDecodeError("truncated header")
        length = data[1]
        total = _V1_HEADER + length + _CHECKSUM
        _check_length(data, total)
        sequence, system_id, component_id, message_id = data[2:6]
        version, incompat, compat = 1, 0, 0
        payload_start = _V1_HEADER
        signature = b""
    elif magic == MAGIC_V2:
        if len(data) < _V2_HEADER:
            raise FrameDecodeError("truncated header")
        length, incompat, compat, sequence, system_id, component_id = data[1:7]
        if incompat & ~_INCOMPAT_SIGNED:
            raise FrameDecodeError(f"unsupported incompatibility flags 0x{incompat:02X}")
        message_id = int.from_bytes(data[7:10], "little")
        signature_length = _SIGNATURE if incompat & _INCOMPAT_SIGNED else 0
        total = _V2_HEADER + length + _CHECKSUM + signature_length
        _check_length(data, total)
        version = 2
        payload_start = _V2_HEADER
        signature = data[total - signature_length:total] if signature_length else b""
    else:
        raise FrameDecodeError(f"invalid magic byte 0x{magic:02X}")

    checksum_at = payload_start + length
    payload = data[payload_start:checksum_at]
    received = int.from_bytes(data[checksum_at:checksum_at + _CHECKSUM], "little")
    extra = CRC_EXTRA.get(message_id)
    if extra is not None and _crc(data[1:checksum_at], extra) != received:
        raise FrameDecodeError(f"checksum mismatch for message {message_id}")

    return RawFrame(
        message_id=message_id,
        payload=payload,
        system_id=system_id,
        component_id=component_id,
        sequence=sequence,
        version=version,
        incompat_flags=incompat,
        compat_flags=compat,
        signature=signature,
    )


def _trim_payload(payload: bytes) -> bytes:
    # MAVLink 2 drops trailing zero bytes, but never the first byte.
    return payload.rstrip(b"\x00") or payload[:1]


def encode_frame(frame: RawFrame, sequence: Optional[int] = None) -> bytes:
    """Encode a frame; ``sequence`` overrides the frame's own sequence number."""
    extra = CRC_EXTRA.get(frame.message_id)
    if extra is None:
        raise ValueError(f"no checksum seed known for message {frame.message_id}")
    if len(frame.payload) > _MAX_PAYLOAD:
        raise ValueError("payload longer than 255 bytes")
    seq = (frame.sequence if sequence is None else sequence) & 0xFF

    if frame.version == 1:
        if frame.message_id > 0xFF:
            raise ValueError("MAVLink 1 message IDs must fit in one byte")
        payload = frame.payload
        body = bytes([len(payload), seq, frame.system_id, frame.component_id, frame.message_id])
        magic, signature = MAGIC_V1, b""
    elif frame.version == 2:
        if frame.message_id > 0xFFFFFF:
            raise ValueError("MAVLink 2 message IDs must fit in three bytes")
        payload = _trim_payload(frame.payload)
        incompat = frame.incompat_flags
        signature = frame.signature
        if signature:
            if len(signature) != _SIGNATURE:
                raise ValueError("signature must be 13 bytes")
            incompat |= _INCOMPAT_SIGNED
        elif incompat & _INCOMPAT_SIGNED:
            raise ValueError("signed frame lacks a signature")
        body = bytes(
            [len(payload), incompat, frame.compat_flags, seq, frame.system_id, frame.component_id]
        ) + frame.message_id.to_bytes(3, "little")
        magic = MAGIC_V2
    else:
        raise ValueError(f"unsupported MAVLink version {frame.version}")

    body += payload
    checksum = _crc(body, extra).to_bytes(2, "little")
    return bytes([magic]) + body + checksum + signature


def _frame_size(buffer: bytearray) -> Optional[int]:
    """Return the size of the frame at the start of ``buffer`` once known."""
    if buffer[0] == MAGIC_V1:
        return buffer[1] + _V1_HEADER + _CHECKSUM if len(buffer) >= 2 else None
    if len(buffer) < 3:
        return None
    signature = _SIGNATURE if buffer[2] & _INCOMPAT_SIGNED else 0
    return buffer[1] + _V2_HEADER + _CHECKSUM + signature


class _FrameParser:
    """Splits a byte stream into frames, skipping bytes that do not parse."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> Iterator[RawFrame]:
        self._buffer += data
        while True:
            starts = [i for i in (self._buffer.find(MAGIC_V1), self._buffer.find(MAGIC_V2)) if i >= 0]
            if not starts:
                self._buffer.clear()
                return
            del self._buffer[:min(starts)]
            size = _frame_size(self._buffer)
            if size is None or len(self._buffer) < size:
                return
            try:
                frame = decode_frame(bytes(self._buffer[:size]))
            except FrameDecodeError:
                del self._buffer[0]
                continue
            del self._buffer[:size]
            yield frame


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"address must be host:port, got {address!r}")
    return host.strip("[]"), int(port)


def _family(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


_CLOSED = object()


class MavlinkNode:
    """Receives MAVLink frames from one endpoint on background threads."""

    def __init__(self, endpoint: Endpoint) -> None:
        if endpoint is None:
            raise ValueError("at least one endpoint must be provided")
        self.endpoint = endpoint
        self._frames: queue.Queue = queue.Queue()
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._handles: list = []
        self._threads: list[threading.Thread] = []
        self._spawn(self._open(endpoint))

    def __enter__(self) -> MavlinkNode:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def events(self) -> Iterator[RawFrame]:
        """Yield received frames until the node is closed."""
        while True:
            item = self._frames.get()
            if item is _CLOSED:
                self._frames.put(_CLOSED)
                return
            yield item

    def close(self) -> None:
        """Close the endpoint and end every events() iterator; safe to repeat."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            handles = list(self._handles)
            threads = list(self._threads)
        for handle in handles:
            try:
                handle.close()
            except OSError:
                pass
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join(timeout=_JOIN_TIMEOUT)
        self._frames.put(_CLOSED)

    def _open(self, endpoint: Endpoint) -> Callable[[], None]:
        match endpoint:
            case UdpServerEndpoint(address=address):
                host, port = _split_address(address)
                sock = socket.socket(_family(host), socket.SOCK_DGRAM)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                self._bind_or_close(sock, (host, port))
                return functools.partial(self._read_datagrams, sock)
            case UdpClientEndpoint(address=address):
                host, port = _split_address(address)
                sock = socket.socket(_family(host), socket.SOCK_DGRAM)
                try:
                    sock.connect((host, port))
                except OSError:
                    sock.close()
                    raise
                sock.settimeout(_POLL_SECONDS)
                self._register(sock)
                return functools.partial(self._read_datagrams, sock)
            case TcpServerEndpoint(address=address):
                host, port = _split_address(address)
                sock = socket.socket(_family(host), socket.SOCK_STREAM)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                self._bind_or_close(sock, (host, port))
                sock.listen()
                return functools.partial(self._accept_loop, sock)
            case TcpClientEndpoint(address=address):
                return functools.partial(self._tcp_client_loop, _split_address(address))
            case SerialEndpoint(device=device, baud=baud):
                import serial

                port = serial.Serial(device, baudrate=baud, timeout=_POLL_SECONDS)
                self._register(port)
                return functools.partial(self._read_serial, port)
            case _:
                raise TypeError(f"unsupported endpoint type: {type(endpoint).__name__}")

    def _bind_or_close(self, sock: socket.socket, address: tuple[str, int]) -> None:
        try:
            sock.bind(address)
        except OSError:
            sock.close()
            raise
        sock.settimeout(_POLL_SECONDS)
        self._register(sock)

    def _register(self, handle) -> None:
        with self._lock:
            closed = self._closed.is_set()
            if not closed:
                self._handles.append(handle)
        if closed:
            handle.close()

    def _spawn(self, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, daemon=True)
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def _publish(self, frames: Iterator[RawFrame]) -> None:
        for frame in frames:
            self._frames.put(frame)

    def _read_datagrams(self, sock: socket.socket) -> None:
        while not self._closed.is_set():
            try:
                data = sock.recv(65535)
            except socket.timeout:
                continue
            except OSError:
                return
            self._publish(_FrameParser().feed(data))

    def _read_stream(self, conn: socket.socket) -> None:
        parser = _FrameParser()
        try:
            while not self._closed.is_set():
                try:
                    data = conn.recv(4096)
                except socket.timeout:
                    continue
                except OSError:
                    return
                if not data:
                    return
                self._publish(parser.feed(data))
        finally:
            conn.close()

    def _accept_loop(self, server: socket.socket) -> None:
        while not self._closed.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(_POLL_SECONDS)
            self._register(conn)
            self._spawn(functools.partial(self._read_stream, conn))

    def _tcp_client_loop(self, address: tuple[str, int]) -> None:
        while not self._closed.is_set():
            try:
                conn = socket.create_connection(address, timeout=_CONNECT_TIMEOUT)
            except OSError:
                self._closed.wait(_RECONNECT_DELAY)
                continue
            conn.settimeout(_POLL_SECONDS)
            self._register(conn)
            self._read_stream(conn)

    def _read_serial(self, port) -> None:
        parser = _FrameParser()
        while not self._closed.is_set():
            try:
                data = port.read(4096)
            except (OSError, TypeError, AttributeError):
                return
            if data:
                self._publish(parser.feed(data))