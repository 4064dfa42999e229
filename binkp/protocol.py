"""
binkp wire format (FTS-1026) — frame encode/decode.

Frame layout (TCP):
  [header: 2B big-endian][body: NB]

  header bit 15     = command flag
  header bits 0..14 = body length (max 32767)

Command frame body:
  [command: 1B][argument: N-1 bytes]

Data frame body:
  raw file bytes
"""

from __future__ import annotations

import select
import socket
import struct
import time
from dataclasses import dataclass
from enum import IntEnum

from .errors import (
    ConnectionClosed,
    FrameTooLarge,
    ProtocolError,
    ReadTimeout,
    TransportError,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HEADER_FMT: str = "!H"
HEADER_SIZE: int = struct.calcsize(HEADER_FMT)  # = 2

COMMAND_FLAG: int = 0x8000
LENGTH_MASK: int = 0x7FFF
MAX_FRAME_SIZE: int = 32767

DEFAULT_PORT: int = 24554
DATA_BLOCK_SIZE: int = 8192         # file bytes per data frame

POLL_INTERVAL: float = 0.1          # non-blocking read readiness wait
MAX_READ_RETRIES: int = 3           # transient empty reads tolerated mid-frame
RETRY_DELAY: float = 0.01


# ---------------------------------------------------------------------------
# Command codes
# ---------------------------------------------------------------------------

class Command(IntEnum):
    M_NUL  = 0
    M_ADR  = 1
    M_PWD  = 2
    M_FILE = 3
    M_OK   = 4
    M_EOB  = 5
    M_GOT  = 6
    M_ERR  = 7
    M_BSY  = 8
    M_GET  = 9
    M_SKIP = 10


# ---------------------------------------------------------------------------
# Frame
# ---------------------------------------------------------------------------

@dataclass
class Frame:
    length: int              # body length; command frames include the command byte
    is_command: bool
    command: int = 0
    payload: bytes = b""

    def __post_init__(self) -> None:
        if self.length > MAX_FRAME_SIZE:
            raise FrameTooLarge(f"Frame too large: {self.length} > {MAX_FRAME_SIZE}")

    @property
    def text(self) -> str:
        """Command argument decoded as text."""
        return self.payload.decode("utf-8", errors="replace")

    @property
    def command_name(self) -> str:
        try:
            return Command(self.command).name
        except ValueError:
            return f"UNKNOWN({self.command})"

    def to_bytes(self) -> bytes:
        header = self.length | (COMMAND_FLAG if self.is_command else 0)
        if self.is_command:
            return struct.pack(HEADER_FMT, header) + bytes([self.command]) + self.payload
        return struct.pack(HEADER_FMT, header) + self.payload

    def __str__(self) -> str:
        if self.is_command:
            return f"CMD {self.command_name}({self.command}): {self.text}"
        preview = self.payload[:50]
        return f"DATA {len(self.payload)}B: {preview!r}{'...' if len(self.payload) > 50 else ''}"


def encode_command(command: int, data: str | bytes = b"") -> Frame:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return Frame(length=len(data) + 1, is_command=True, command=int(command), payload=data)


def encode_data(data: bytes) -> Frame:
    return Frame(length=len(data), is_command=False, payload=bytes(data))


def decode_frame(raw: bytes) -> Frame:
    """Decode one complete frame from *raw* (header included)."""
    if len(raw) < HEADER_SIZE:
        raise ProtocolError(f"Truncated frame header ({len(raw)} bytes)")
    (header,) = struct.unpack_from(HEADER_FMT, raw)
    body = raw[HEADER_SIZE:]
    length = header & LENGTH_MASK
    if len(body) != length:
        raise ProtocolError(f"Frame length mismatch: header says {length}, got {len(body)}")
    return _build(header, body)


def _build(header: int, body: bytes) -> Frame:
    length = header & LENGTH_MASK
    if length > MAX_FRAME_SIZE:
        raise FrameTooLarge(f"Frame too large: {length}")
    if header & COMMAND_FLAG:
        if length == 0:
            raise ProtocolError("Command frame without command byte")
        return Frame(length=length, is_command=True, command=body[0], payload=body[1:])
    return Frame(length=length, is_command=False, payload=body)


# ---------------------------------------------------------------------------
# Socket I/O
# ---------------------------------------------------------------------------

def recv_exact(sock, n: int) -> bytes:
    """
    Blocking read of exactly n bytes from socket.

    Raises ConnectionClosed on EOF and ReadTimeout when the socket timeout
    expires. A transient EAGAIN/EINTR is retried MAX_READ_RETRIES times.
    """
    if n == 0:
        return b""
    buf = bytearray()
    retries = 0
    while len(buf) < n:
        try:
            chunk = sock.recv(n - len(buf))
        except (BlockingIOError, InterruptedError):
            retries += 1
            if retries >= MAX_READ_RETRIES:
                raise ReadTimeout(f"Read stalled after {len(buf)}/{n} bytes")
            time.sleep(RETRY_DELAY)
            continue
        except TimeoutError:
            raise ReadTimeout(f"Read timed out after {len(buf)}/{n} bytes") from None
        except OSError as exc:
            raise TransportError(f"Read failed: {exc}") from exc
        if not chunk:
            raise ConnectionClosed("Connection closed")
        retries = 0
        buf.extend(chunk)
    return bytes(buf)


def read_frame(sock, non_blocking: bool = False) -> Frame | None:
    """
    Read one frame from socket.

    In non-blocking mode returns None when no data arrives within
    POLL_INTERVAL; once the first byte is available the rest of the frame
    is read with the socket's own timeout.
    """
    if non_blocking:
        try:
            ready, _, _ = select.select([sock], [], [], POLL_INTERVAL)
        except (OSError, ValueError) as exc:
            raise TransportError(f"Socket not readable: {exc}") from exc
        if not ready:
            return None
    (header,) = struct.unpack(HEADER_FMT, recv_exact(sock, HEADER_SIZE))
    body = recv_exact(sock, header & LENGTH_MASK)
    return _build(header, body)


def write_frame(sock, frame: Frame) -> None:
    """Write one frame; a single sendall so nothing lingers in a buffer."""
    try:
        sock.sendall(frame.to_bytes())
    except TimeoutError:
        raise ReadTimeout("Write timed out") from None
    except OSError as exc:
        raise TransportError(f"Write failed: {exc}") from exc


def tune(sock: socket.socket) -> None:
    """Disable Nagle; binkp keepalive and M_GOT are latency sensitive."""
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError:
        pass
