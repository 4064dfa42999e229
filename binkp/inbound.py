"""
Inbound queue — received packets waiting for the PacketStore.

Directory layout under the inbound path::

    <name>.pkt                       complete, waiting for ingestion
    .incoming/<session-id>/<name>    being received by that session only
    <name>.pkt.part                  leftover partial, adopted by a resume
    <name>.pkt.meta                  JSON note for packets from insecure sessions
    .processing/<name>.pkt           claimed by a running process()
    error/<name>.pkt.<unix-ts>       failed ingestion, kept until cleanup()

Every hand-off between these states is an os.link/os.rename/os.replace, so
concurrent sessions never share a staging file and a concurrent Server and
CLI never ingest the same packet twice.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO

from .config import BinkpConfig
from .errors import ConfigError
from .packet import PacketStore

log = logging.getLogger("binkp.inbound")

PACKET_GLOB = "*.pkt"
PART_SUFFIX = ".part"
META_SUFFIX = ".meta"
ERROR_DIR = "error"
PROCESSING_DIR = ".processing"
INCOMING_DIR = ".incoming"

_ERROR_SUFFIX_RE = re.compile(r"\.\d+$")


def safe_name(name: str) -> str | None:
    """Base name of a peer-supplied file name, or None when unusable."""
    base = PurePosixPath(name.replace("\\", "/")).name
    if base in ("", ".", ".."):
        return None
    return base


def unique_path(directory: Path, name: str) -> Path:
    """*directory*/*name*, with a numeric suffix if that name is taken."""
    candidate = directory / name
    if not candidate.exists():
        return candidate
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    n = 1
    while True:
        alt = f"{stem}.{n}.{ext}" if ext else f"{stem}.{n}"
        candidate = directory / alt
        if not candidate.exists():
            return candidate
        n += 1


@dataclass
class ProcessResult:
    filename: str
    success: bool
    messages: int = 0
    error: str = ""


class InboundQueue:
    def __init__(self, config: BinkpConfig, packet_store: PacketStore | None = None) -> None:
        self._config = config
        self._store = packet_store
        self._dir = Path(config.inbound_path)

    @property
    def path(self) -> Path:
        return self._dir

    @property
    def error_dir(self) -> Path:
        return self._dir / ERROR_DIR

    @property
    def processing_dir(self) -> Path:
        return self._dir / PROCESSING_DIR

    # ------------------------------------------------------------------
    # Session side: staging of files being received
    # ------------------------------------------------------------------

    def stage_dir(self, session_id: str) -> Path:
        return self._dir / INCOMING_DIR / session_id

    def part_path(self, name: str, session_id: str) -> Path:
        return self.stage_dir(session_id) / name

    def open_partial(self, name: str, session_id: str, offset: int = 0) -> BinaryIO | None:
        """
        Open the staging file for *name* in this session's directory.

        With offset > 0 the existing partial is reopened and positioned at
        *offset*; None is returned when there is nothing to resume from. A
        leftover ``<name>.part`` in the inbound directory is adopted for the
        resume by renaming it, so only one session can take it.
        """
        part = self.part_path(name, session_id)
        part.parent.mkdir(parents=True, exist_ok=True)
        if offset <= 0:
            return open(part, "wb")
        leftover = self._dir / (name + PART_SUFFIX)
        if not part.exists():
            try:
                os.rename(leftover, part)
            except FileNotFoundError:
                log.warning("Cannot resume %s at %d: no partial file", name, offset)
                self._drop_stage(session_id)
                return None
        have = part.stat().st_size
        if have < offset:
            log.warning("Cannot resume %s at %d: only %d bytes on disk", name, offset, have)
            os.replace(part, leftover)
            self._drop_stage(session_id)
            return None
        fh = open(part, "r+b")
        fh.seek(offset)
        fh.truncate()
        return fh

    def finalize(
        self,
        name: str,
        session_id: str,
        timestamp: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Path:
        """Move a completed partial into the queue; returns its final path."""
        part = self.part_path(name, session_id)
        final = self._place(part, name)
        part.unlink()
        self._drop_stage(session_id)
        if timestamp:
            try:
                os.utime(final, (timestamp, timestamp))
            except OSError:
                log.debug("Could not set mtime on %s", final.name)
        if metadata is not None:
            meta_path = final.with_name(final.name + META_SUFFIX)
            meta_path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        if final.name != name:
            log.info("Inbound name collision: %s stored as %s", name, final.name)
        return final

    def discard_partial(self, name: str, session_id: str) -> bool:
        try:
            self.part_path(name, session_id).unlink()
        except FileNotFoundError:
            return False
        finally:
            self._drop_stage(session_id)
        log.info("Deleted incomplete file %s", name)
        return True

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def process(self) -> list[ProcessResult]:
        """Hand every queued packet to the PacketStore."""
        files = sorted(self._dir.glob(PACKET_GLOB))
        if not files:
            return []
        log.info("Processing %d inbound file(s)", len(files))
        results: list[ProcessResult] = []
        for path in files:
            claimed = self._claim(path)
            if claimed is None:
                continue
            results.append(self._ingest(claimed))
        return results

    def process_file(self, filename: str) -> ProcessResult:
        path = self._dir / filename
        if not path.is_file():
            raise FileNotFoundError(f"Inbound file not found: {filename}")
        claimed = self._claim(path)
        if claimed is None:
            raise FileNotFoundError(f"Inbound file already claimed: {filename}")
        return self._ingest(claimed)

    def retry(self, error_filename: str) -> ProcessResult:
        """Move a file from error/ back into the queue and process it."""
        src = self.error_dir / error_filename
        if not src.is_file():
            raise FileNotFoundError(f"Error file not found: {error_filename}")
        original = _ERROR_SUFFIX_RE.sub("", error_filename)
        dest = unique_path(self._dir, original)
        os.replace(src, dest)
        log.info("Moved error file back to inbound: %s -> %s", error_filename, dest.name)
        return self.process_file(dest.name)

    def cleanup(self, max_age_hours: float = 24) -> list[str]:
        """Delete error files and abandoned partials older than *max_age_hours*."""
        cutoff = time.time() - max_age_hours * 3600
        cleaned = []
        if self.error_dir.is_dir():
            for path in sorted(self.error_dir.iterdir()):
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    cleaned.append(path.name)
                    log.info("Cleaned up old error file: %s", path.name)
        for path in self._partials():
            if path.stat().st_mtime < cutoff:
                path.unlink()
                cleaned.append(path.name)
                log.info("Cleaned up abandoned partial: %s", path.name)
                if path.parent != self._dir:
                    self._drop_stage(path.parent.name)
        return cleaned

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def pending_files(self) -> list[dict[str, Any]]:
        return [_file_info(p) for p in sorted(self._dir.glob(PACKET_GLOB))]

    def error_files(self) -> list[dict[str, Any]]:
        if not self.error_dir.is_dir():
            return []
        return [_file_info(p) for p in sorted(self.error_dir.iterdir()) if p.is_file()]

    def stats(self) -> dict[str, Any]:
        return {
            "pending_files": len(list(self._dir.glob(PACKET_GLOB))),
            "partial_files": len(self._partials()),
            "error_files": len(self.error_files()),
            "inbound_path": str(self._dir),
        }

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _claim(self, path: Path) -> Path | None:
        self.processing_dir.mkdir(parents=True, exist_ok=True)
        target = self.processing_dir / path.name
        try:
            os.rename(path, target)
        except FileNotFoundError:
            log.debug("%s claimed by another worker", path.name)
            return None
        meta = path.with_name(path.name + META_SUFFIX)
        if meta.exists():
            os.replace(meta, target.with_name(target.name + META_SUFFIX))
        return target

    def _ingest(self, claimed: Path) -> ProcessResult:
        if self._store is None:
            self._release(claimed)
            raise ConfigError("No PacketStore configured for inbound processing")
        name = claimed.name
        meta = claimed.with_name(name + META_SUFFIX)
        log.info("Processing inbound file: %s", name)
        try:
            messages = self._store.parse(claimed)
        except Exception as exc:
            log.error("Failed to process %s: %s", name, exc)
            self._move_to_error(claimed)
            meta.unlink(missing_ok=True)
            return ProcessResult(filename=name, success=False, error=str(exc))
        claimed.unlink(missing_ok=True)
        meta.unlink(missing_ok=True)
        count = len(messages) if messages is not None else 0
        log.info("Successfully processed %s (%d message(s))", name, count)
        return ProcessResult(filename=name, success=True, messages=count)

    def _move_to_error(self, path: Path) -> Path:
        self.error_dir.mkdir(parents=True, exist_ok=True)
        dest = unique_path(self.error_dir, f"{path.name}.{int(time.time())}")
        os.replace(path, dest)
        log.warning("Moved failed file to error directory: %s", dest.name)
        return dest

    def _partials(self) -> list[Path]:
        staged = self._dir.glob(f"{INCOMING_DIR}/*/*")
        leftover = self._dir.glob("*" + PART_SUFFIX)
        return sorted(p for p in (*staged, *leftover) if p.is_file())

    def _place(self, src: Path, name: str) -> Path:
        # os.link refuses an existing target, so two sessions finishing the
        # same name never overwrite each other.
        while True:
            final = unique_path(self._dir, name)
            try:
                os.link(src, final)
            except FileExistsError:
                continue
            return final

    def _drop_stage(self, session_id: str) -> None:
        stage = self.stage_dir(session_id)
        try:
            stage.rmdir()
        except OSError:
            log.debug("Staging directory %s not removed", stage.name)

    def _release(self, claimed: Path) -> None:
        os.replace(claimed, unique_path(self._dir, claimed.name))
        meta = claimed.with_name(claimed.name + META_SUFFIX)
        if meta.exists():
            os.replace(meta, self._dir / meta.name)


def _file_info(path: Path) -> dict[str, Any]:
    st = path.stat()
    return {
        "filename": path.name,
        "size": st.st_size,
        "modified": int(st.st_mtime),
        "path": str(path),
    }
