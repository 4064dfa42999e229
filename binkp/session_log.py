"""
Session audit log.

SessionLog is the interface the engine talks to; SqliteSessionLog keeps one
row per binkp session plus one row per received file (with its BLAKE3
digest) in a local SQLite database.

    slog = SqliteSessionLog(config.database_path)
    sid = slog.start("1:153/149", "192.0.2.7", "secure", inbound=True)
    slog.update(sid, files_received=2, bytes_received=4096)
    slog.end(sid, "success")
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .session import SessionResult

log = logging.getLogger("binkp.session_log")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS binkp_session_log (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_address    TEXT,
    remote_ip         TEXT,
    session_type      TEXT NOT NULL,      -- secure | insecure | crash_outbound
    is_inbound        INTEGER NOT NULL,
    status            TEXT NOT NULL,      -- active | success | failed
    auth_method       TEXT,
    files_received    INTEGER DEFAULT 0,
    files_sent        INTEGER DEFAULT 0,
    bytes_received    INTEGER DEFAULT 0,
    bytes_sent        INTEGER DEFAULT 0,
    error_message     TEXT,
    started_at        REAL NOT NULL,
    ended_at          REAL
);

CREATE INDEX IF NOT EXISTS idx_session_log_remote
    ON binkp_session_log (remote_address, session_type, started_at);

CREATE TABLE IF NOT EXISTS binkp_session_files (
    session_id  INTEGER NOT NULL REFERENCES binkp_session_log(id) ON DELETE CASCADE,
    filename    TEXT NOT NULL,
    size        INTEGER NOT NULL,
    digest      TEXT
);
"""

_STAT_FIELDS = (
    "files_received", "files_sent", "bytes_received", "bytes_sent",
    "auth_method", "remote_address", "session_type",
)


class SessionLog(Protocol):
    def start(
        self,
        remote_address: str | None,
        remote_ip: str | None,
        session_type: str,
        inbound: bool,
    ) -> int: ...

    def update(self, session_id: int, **stats: Any) -> None: ...

    def end(self, session_id: int, status: str, error: str | None = None) -> None: ...

    def count_recent_insecure(self, remote_address: str, minutes: int = 60) -> int: ...

    def add_file(self, session_id: int, filename: str, size: int, digest: str | None) -> None: ...


def record_session(slog: SessionLog, result: SessionResult) -> int:
    """Store a finished session in one go; returns the log id."""
    sid = slog.start(result.remote_address or None, result.remote_ip or None,
                     result.session_type, result.inbound)
    slog.update(
        sid,
        auth_method=result.auth_method,
        files_received=len(result.files_received),
        files_sent=len(result.files_sent),
        bytes_received=result.bytes_received,
        bytes_sent=result.bytes_sent,
    )
    for item in result.received:
        slog.add_file(sid, item.name, item.size, item.digest)
    slog.end(sid, "success" if result.success else "failed", result.error or None)
    return sid


class SqliteSessionLog:
    def __init__(self, db_path: str | Path) -> None:
        self._path = str(db_path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # SessionLog
    # ------------------------------------------------------------------

    def start(
        self,
        remote_address: str | None,
        remote_ip: str | None,
        session_type: str,
        inbound: bool,
    ) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO binkp_session_log"
                " (remote_address, remote_ip, session_type, is_inbound, status, started_at)"
                " VALUES (?, ?, ?, ?, 'active', ?)",
                (remote_address, remote_ip, session_type, int(inbound), time.time()),
            )
            return int(cur.lastrowid)

    def update(self, session_id: int, **stats: Any) -> None:
        unknown = set(stats) - set(_STAT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        if not stats:
            return
        # column names come from _STAT_FIELDS only
        assignments = ", ".join(f"{name} = ?" for name in stats)
        with self._lock, self._conn:
            self._conn.execute(
                f"UPDATE binkp_session_log SET {assignments} WHERE id = ?",
                (*stats.values(), session_id),
            )

    def end(self, session_id: int, status: str, error: str | None = None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE binkp_session_log SET status = ?, error_message = ?, ended_at = ?"
                " WHERE id = ?",
                (status, error, time.time(), session_id),
            )

    def count_recent_insecure(self, remote_address: str, minutes: int = 60) -> int:
        cutoff = time.time() - minutes * 60
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM binkp_session_log"
                " WHERE remote_address = ? AND session_type = 'insecure' AND started_at >= ?",
                (remote_address, cutoff),
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------

    def add_file(self, session_id: int, filename: str, size: int, digest: str | None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO binkp_session_files (session_id, filename, size, digest)"
                " VALUES (?, ?, ?, ?)",
                (session_id, filename, size, digest),
            )

    def last_poll(self, remote_address: str) -> float | None:
        """Start time of the latest session we originated to *remote_address*."""
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(started_at) FROM binkp_session_log"
                " WHERE remote_address = ? AND is_inbound = 0 AND session_type != 'crash_outbound'",
                (remote_address,),
            ).fetchone()
        return row[0]

    def recent_sessions(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM binkp_session_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]

    def session_files(self, session_id: int) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT filename, size, digest FROM binkp_session_files WHERE session_id = ?",
                (session_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def cleanup(self, days: int = 30) -> int:
        cutoff = time.time() - days * 86400
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM binkp_session_log WHERE started_at < ?", (cutoff,)
            )
        if cur.rowcount:
            log.info("Removed %d old session log row(s)", cur.rowcount)
        return cur.rowcount
