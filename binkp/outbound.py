"""
Outbound queue — packets waiting to be sent, and per-session claims.

batch_for(uplink) → list[Path]
    Packets whose FTS header destination lies in the uplink's networks.
    Unreadable headers are skipped with a warning, never sent blind.

claim(session_id, uplink) → Claim
    Moves the batch into <outbound>/.claimed/<session_id>/ with os.rename,
    so two sessions never send the same packet. The session deletes each
    file on M_GOT and hands the rest back with Claim.release_all().

chunk_file(path, chunk_size) → Iterator[bytes]
    Buffered reader producing the data-frame blocks for one file.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Iterator

from .config import BinkpConfig, Uplink
from .errors import PacketHeaderError
from .inbound import unique_path
from .packet import read_packet_header
from .protocol import DATA_BLOCK_SIZE

log = logging.getLogger("binkp.outbound")

PACKET_GLOB = "*.pkt"
CLAIM_DIR = ".claimed"


@dataclass
class OutboundFile:
    path: Path           # current location (inside the claim directory)
    name: str            # name announced to the peer
    size: int
    mtime: int

    def file_line(self, offset: int = 0) -> str:
        """M_FILE argument: "<name> <size> <mtime> <offset>"."""
        return f"{self.name} {self.size} {self.mtime} {offset}"

    @classmethod
    def from_path(cls, path: Path) -> OutboundFile:
        st = path.stat()
        return cls(path=path, name=path.name, size=st.st_size, mtime=int(st.st_mtime))


def chunk_file(path: Path | str, chunk_size: int = DATA_BLOCK_SIZE) -> Iterator[bytes]:
    """Yield blocks of *path* up to *chunk_size* bytes; nothing for an empty file."""
    with open(path, "rb") as fh:
        while True:
            block = fh.read(chunk_size)
            if not block:
                break
            yield block


def match_name(name: str, candidates: Iterable[str]) -> str | None:
    """Pick the candidate a peer meant by *name*: exact match first, then base name."""
    candidates = list(candidates)
    if name in candidates:
        return name
    base = PurePosixPath(name.replace("\\", "/")).name
    for candidate in candidates:
        if PurePosixPath(candidate).name == base:
            return candidate
    return None


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------

@dataclass
class Claim:
    """Outbound files owned by one session until confirmed or released."""

    queue: OutboundQueue
    session_id: str
    directory: Path
    files: dict[str, OutboundFile] = field(default_factory=dict)

    @property
    def pending(self) -> list[str]:
        return list(self.files)

    def match(self, name: str) -> str | None:
        return match_name(name, self.files)

    def confirm(self, name: str) -> str | None:
        """Peer confirmed *name* (M_GOT): delete it for good."""
        key = self.match(name)
        if key is None:
            return None
        entry = self.files.pop(key)
        try:
            entry.path.unlink()
        except FileNotFoundError:
            log.warning("Sent file already gone: %s", entry.path)
        log.debug("Deleted sent file: %s", key)
        return key

    def release(self, name: str) -> str | None:
        """Peer skipped *name* (M_SKIP): put it back into the outbound queue."""
        key = self.match(name)
        if key is None:
            return None
        entry = self.files.pop(key)
        self.queue.restore(entry.path)
        return key

    def release_all(self) -> list[str]:
        released = []
        for key in list(self.files):
            if self.release(key):
                released.append(key)
        try:
            self.directory.rmdir()
        except OSError:
            log.debug("Claim directory %s not removed", self.directory)
        if released:
            log.info("Returned %d unconfirmed file(s) to outbound", len(released))
        return released


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class OutboundQueue:
    def __init__(self, config: BinkpConfig) -> None:
        self._config = config
        self._dir = Path(config.outbound_path)

    @property
    def path(self) -> Path:
        return self._dir

    @property
    def claim_root(self) -> Path:
        return self._dir / CLAIM_DIR

    def list_packets(self) -> list[Path]:
        if not self._dir.is_dir():
            return []
        return sorted(p for p in self._dir.glob(PACKET_GLOB) if p.is_file())

    def packet_info(self, path: Path) -> dict[str, Any]:
        st = path.stat()
        info: dict[str, Any] = {
            "filename": path.name,
            "size": st.st_size,
            "modified": int(st.st_mtime),
            "orig_address": None,
            "dest_address": None,
        }
        try:
            header = read_packet_header(path)
        except PacketHeaderError as exc:
            log.debug("%s: %s", path.name, exc)
        else:
            info["orig_address"] = header.orig_address
            info["dest_address"] = header.dest_address
        return info

    def batch_for(self, uplink: Uplink | None) -> list[Path]:
        """Packets eligible for *uplink*; every packet when there is no uplink context."""
        packets = self.list_packets()
        if uplink is None:
            return packets
        batch = []
        for path in packets:
            try:
                header = read_packet_header(path)
            except PacketHeaderError as exc:
                log.warning("Skipping %s: %s", path.name, exc)
                continue
            dest = header.dest_address
            if self._config.is_destination_for_uplink(dest, uplink):
                batch.append(path)
            else:
                log.debug("Packet %s (dest %s) not routed via %s", path.name, dest, uplink.address)
        return batch

    def has_packets_for(self, uplink: Uplink) -> bool:
        return bool(self.batch_for(uplink))

    def claim(self, session_id: str, uplink: Uplink | None = None) -> Claim:
        directory = self.claim_root / session_id
        directory.mkdir(parents=True, exist_ok=True)
        claim = Claim(queue=self, session_id=session_id, directory=directory)
        for path in self.batch_for(uplink):
            target = directory / path.name
            try:
                os.rename(path, target)
            except FileNotFoundError:
                log.debug("%s claimed by another session", path.name)
                continue
            claim.files[path.name] = OutboundFile.from_path(target)
        if claim.files:
            log.debug("Session %s claimed %d file(s)", session_id, len(claim.files))
        return claim

    def recover_stale(self, max_age: float | None = None) -> int:
        """Return files from claim directories older than *max_age* seconds."""
        if not self.claim_root.is_dir():
            return 0
        max_age = self._config.timing.claim_max_age if max_age is None else max_age
        cutoff = time.time() - max_age
        recovered = 0
        for directory in self.claim_root.iterdir():
            if not directory.is_dir() or directory.stat().st_mtime >= cutoff:
                continue
            for path in directory.iterdir():
                self.restore(path)
                recovered += 1
            shutil.rmtree(directory, ignore_errors=True)
        if recovered:
            log.warning("Recovered %d file(s) from stale claims", recovered)
        return recovered

    def add(self, source: Path | str) -> Path:
        """Copy *source* into the queue; returns the queued path."""
        self._dir.mkdir(parents=True, exist_ok=True)
        dest = unique_path(self._dir, Path(source).name)
        shutil.copy2(source, dest)
        log.info("Queued %s for sending", dest.name)
        return dest

    def delete(self, filename: str) -> None:
        path = self._dir / filename
        if not path.is_file():
            raise FileNotFoundError(f"Outbound file not found: {filename}")
        path.unlink()
        log.info("Deleted outbound file: %s", filename)

    def cleanup(self, max_age_hours: float = 48) -> list[str]:
        cutoff = time.time() - max_age_hours * 3600
        cleaned = []
        for path in self.list_packets():
            if path.stat().st_mtime < cutoff:
                path.unlink()
                cleaned.append(path.name)
                log.info("Cleaned up old outbound file: %s", path.name)
        return cleaned

    def stats(self) -> dict[str, Any]:
        packets = self.list_packets()
        claimed = 0
        if self.claim_root.is_dir():
            claimed = sum(1 for d in self.claim_root.iterdir() if d.is_dir() for _ in d.iterdir())
        return {
            "pending_files": len(packets),
            "total_size": sum(p.stat().st_size for p in packets),
            "claimed_files": claimed,
            "outbound_path": str(self._dir),
        }

    def restore(self, path: Path) -> Path:
        dest = unique_path(self._dir, path.name)
        os.replace(path, dest)
        log.debug("Released %s back to outbound", dest.name)
        return dest
