"""
FTS-0001 packet header access.

The engine treats .pkt contents as opaque; only the 58-byte header is read
so outbound packets can be routed to the right uplink.

Header fields used (little-endian uint16):
  0  origNode     2  destNode
  20 origNet      22 destNet
  34 origZone     36 destZone    (FSC-0039 / Type-2+ extension)
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .errors import PacketHeaderError

PACKET_HEADER_SIZE: int = 58
DEFAULT_ZONE: int = 1


@dataclass(frozen=True)
class PacketHeader:
    orig_zone: int
    orig_net: int
    orig_node: int
    dest_zone: int
    dest_net: int
    dest_node: int

    @property
    def orig_address(self) -> str:
        return f"{self.orig_zone}:{self.orig_net}/{self.orig_node}"

    @property
    def dest_address(self) -> str:
        return f"{self.dest_zone}:{self.dest_net}/{self.dest_node}"


def parse_packet_header(header: bytes) -> PacketHeader:
    if len(header) < PACKET_HEADER_SIZE:
        raise PacketHeaderError(f"Header too short ({len(header)} bytes)")
    orig_node, dest_node = struct.unpack_from("<HH", header, 0)
    orig_net, dest_net = struct.unpack_from("<HH", header, 20)
    orig_zone, dest_zone = struct.unpack_from("<HH", header, 34)
    return PacketHeader(
        orig_zone=orig_zone or DEFAULT_ZONE,
        orig_net=orig_net,
        orig_node=orig_node,
        dest_zone=dest_zone or DEFAULT_ZONE,
        dest_net=dest_net,
        dest_node=dest_node,
    )


def read_packet_header(path: str | Path) -> PacketHeader:
    """Read and parse the header of the packet at *path*."""
    try:
        with open(path, "rb") as fh:
            header = fh.read(PACKET_HEADER_SIZE)
    except OSError as exc:
        raise PacketHeaderError(f"Cannot read {Path(path).name}: {exc}") from exc
    return parse_packet_header(header)


def build_packet_header(orig: tuple[int, int, int], dest: tuple[int, int, int]) -> bytes:
    """Minimal 58-byte header with the given (zone, net, node) pairs."""
    buf = bytearray(PACKET_HEADER_SIZE)
    struct.pack_into("<HH", buf, 0, orig[2], dest[2])
    struct.pack_into("<H", buf, 18, 2)          # packet type 2
    struct.pack_into("<HH", buf, 20, orig[1], dest[1])
    struct.pack_into("<HH", buf, 34, orig[0], dest[0])
    return bytes(buf)


# ---------------------------------------------------------------------------
# Collaborator
# ---------------------------------------------------------------------------

class PacketStore(Protocol):
    """Packet content codec and message store, provided by the host BBS."""

    def parse(self, path: Path) -> list[dict[str, Any]]:
        """Import the packet at *path*; raise on failure."""
        ...

    def write(
        self,
        messages: list[dict[str, Any]],
        dest_address: str,
        path: Path | None = None,
    ) -> Path:
        """Write *messages* into a packet for *dest_address*; return its path."""
        ...
