"""
Crashmail — direct delivery of single netmail messages.

A queued message is delivered by calling the destination system itself,
found through its nodelist flags; hub routing is never used. Each attempt
builds a one-message packet, runs handshake + deliver() on a fresh
originating Session and waits for M_GOT. Failures are retried every
retry_interval_minutes until max_attempts, then the item is failed for
good.

    crash = CrashDelivery(config, netmail_store, packet_store, nodelist)
    crash.queue(netmail_id)
    counts = crash.process_queue()

Queue items live in the crashmail_queue table of the binkp database.
"""

from __future__ import annotations

import logging
import socket
import sqlite3
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .config import BinkpConfig
from .errors import BinkpError, ConnectError, DeliveryError, ErrorKind
from .packet import PacketStore
from .protocol import DEFAULT_PORT, tune
from .session import Role, Session, SessionType
from .session_log import SessionLog, record_session

log = logging.getLogger("binkp.crashmail")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS crashmail_queue (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    netmail_id           INTEGER NOT NULL UNIQUE,
    destination_address  TEXT NOT NULL,
    destination_host     TEXT,
    destination_port     INTEGER,
    attempts             INTEGER NOT NULL DEFAULT 0,
    max_attempts         INTEGER NOT NULL,
    next_attempt_at      REAL NOT NULL,
    status               TEXT NOT NULL DEFAULT 'pending',
    error_message        TEXT,
    created_at           REAL NOT NULL,
    last_attempt_at      REAL,
    sent_at              REAL
);

CREATE INDEX IF NOT EXISTS idx_crashmail_due
    ON crashmail_queue (status, next_attempt_at);
"""

# nodelist flags that carry a connectable host, best first
ROUTE_FLAGS = ("IBN", "INA", "IP", "ITN")


class CrashStatus(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class CrashmailItem:
    id: int
    netmail_id: int
    destination_address: str
    destination_host: str | None
    destination_port: int | None
    attempts: int
    max_attempts: int
    next_attempt_at: float
    status: CrashStatus
    error_message: str | None
    created_at: float
    last_attempt_at: float | None = None
    sent_at: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> CrashmailItem:
        data = dict(row)
        data["status"] = CrashStatus(data["status"])
        return cls(**data)


@dataclass
class CrashRoute:
    hostname: str | None
    port: int
    password: str = ""
    source: str = "unknown"
    system_name: str = ""
    sysop_name: str = ""


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class NetmailStore(Protocol):
    def get_netmail(self, netmail_id: int) -> dict[str, Any] | None:
        """Message dict with at least to_address, or None if unknown."""
        ...

    def mark_sent(self, netmail_id: int) -> None: ...


class NodelistManager(Protocol):
    def get_crash_route_info(self, address: str) -> dict[str, Any] | None:
        """Nodelist entry for *address*: flags, and optionally hostname/port."""
        ...


# ---------------------------------------------------------------------------
# Nodelist flags
# ---------------------------------------------------------------------------

def route_from_flags(
    flags: str | Iterable[str],
    default_port: int = DEFAULT_PORT,
) -> tuple[str, int] | None:
    """
    Pick (host, port) from nodelist flags such as "CM,IBN,INA:bbs.example.org".

    Priority is IBN, INA, IP, ITN. A flag without a host (bare "IBN", or
    "IBN:24555") borrows the host from INA.
    """
    if isinstance(flags, str):
        flags = flags.split(",")
    parsed: dict[str, list[str]] = {}
    for flag in flags:
        name, _, value = flag.strip().partition(":")
        parsed.setdefault(name.upper(), []).append(value.strip())

    ina_host = next((v.split(":")[0] for v in parsed.get("INA", []) if v), "")
    for name in ROUTE_FLAGS:
        for value in parsed.get(name, []):
            host, port = _host_port(value, ina_host, default_port)
            if host:
                return host, port
    return None


def _host_port(value: str, fallback_host: str, default_port: int) -> tuple[str, int]:
    if not value:
        return fallback_host, default_port
    if value.isdigit():
        return fallback_host, int(value)
    host, _, port = value.partition(":")
    return host, int(port) if port.isdigit() else default_port


# ---------------------------------------------------------------------------
# Queue storage
# ---------------------------------------------------------------------------

class CrashmailQueue:
    """SQLite persistence for crashmail items."""

    def __init__(self, db_path: str | Path, clock: Callable[[], float] = time.time) -> None:
        self._path = str(db_path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get(self, queue_id: int) -> CrashmailItem | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM crashmail_queue WHERE id = ?", (queue_id,)
            ).fetchone()
        return CrashmailItem.from_row(row) if row else None

    def find_by_netmail(self, netmail_id: int) -> CrashmailItem | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM crashmail_queue WHERE netmail_id = ?", (netmail_id,)
            ).fetchone()
        return CrashmailItem.from_row(row) if row else None

    def insert(self, netmail_id: int, address: str, host: str | None,
               port: int, max_attempts: int) -> int:
        now = self._clock()
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO crashmail_queue"
                " (netmail_id, destination_address, destination_host, destination_port,"
                "  max_attempts, next_attempt_at, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (netmail_id, address, host, port, max_attempts, now, now),
            )
            return int(cur.lastrowid)

    def due(self, limit: int) -> list[CrashmailItem]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM crashmail_queue"
                " WHERE status IN ('pending', 'attempting')"
                " AND next_attempt_at <= ? AND attempts < max_attempts"
                " ORDER BY created_at, id LIMIT ?",
                (self._clock(), limit),
            ).fetchall()
        return [CrashmailItem.from_row(r) for r in rows]

    def set_destination(self, queue_id: int, host: str, port: int) -> None:
        self._execute(
            "UPDATE crashmail_queue SET destination_host = ?, destination_port = ? WHERE id = ?",
            (host, port, queue_id),
        )

    def mark_attempting(self, queue_id: int) -> None:
        self._execute(
            "UPDATE crashmail_queue SET status = 'attempting', last_attempt_at = ? WHERE id = ?",
            (self._clock(), queue_id),
        )

    def mark_sent(self, queue_id: int) -> None:
        self._execute(
            "UPDATE crashmail_queue SET status = 'sent', sent_at = ?, error_message = NULL"
            " WHERE id = ?",
            (self._clock(), queue_id),
        )

    def mark_retry(self, queue_id: int, error: str, retry_in: float) -> CrashStatus:
        """Count a failed attempt; fails the item once attempts reach max_attempts."""
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE crashmail_queue SET attempts = attempts + 1, error_message = ?,"
                " next_attempt_at = ?,"
                " status = CASE WHEN attempts + 1 >= max_attempts THEN 'failed' ELSE 'pending' END"
                " WHERE id = ?",
                (error, self._clock() + retry_in, queue_id),
            )
            row = self._conn.execute(
                "SELECT status FROM crashmail_queue WHERE id = ?", (queue_id,)
            ).fetchone()
        return CrashStatus(row["status"])

    def mark_failed(self, queue_id: int, error: str) -> None:
        self._execute(
            "UPDATE crashmail_queue SET status = 'failed', attempts = attempts + 1,"
            " error_message = ? WHERE id = ?",
            (error, queue_id),
        )

    def delete_unsent(self, queue_id: int) -> bool:
        return self._execute(
            "DELETE FROM crashmail_queue WHERE id = ? AND status != 'sent'", (queue_id,)
        ) > 0

    def reset_failed(self, queue_id: int) -> bool:
        return self._execute(
            "UPDATE crashmail_queue SET status = 'pending', attempts = 0, error_message = NULL,"
            " next_attempt_at = ? WHERE id = ? AND status = 'failed'",
            (self._clock(), queue_id),
        ) > 0

    def stats(self) -> dict[str, int]:
        with self._lock:
            row = self._conn.execute(
                "SELECT"
                " SUM(status = 'pending') AS pending,"
                " SUM(status = 'attempting') AS attempting,"
                " SUM(status = 'sent' AND sent_at > ?) AS sent_24h,"
                " SUM(status = 'failed') AS failed,"
                " COUNT(*) AS total"
                " FROM crashmail_queue",
                (self._clock() - 86400,),
            ).fetchone()
        return {k: int(row[k] or 0) for k in row.keys()}

    def items(self, status: CrashStatus | str | None = None, limit: int = 50) -> list[CrashmailItem]:
        sql = "SELECT * FROM crashmail_queue"
        params: tuple = ()
        if status:
            sql += " WHERE status = ?"
            params = (CrashStatus(status).value,)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self._lock:
            rows = self._conn.execute(sql, params + (limit,)).fetchall()
        return [CrashmailItem.from_row(r) for r in rows]

    def delete_sent_before(self, cutoff: float) -> int:
        return self._execute(
            "DELETE FROM crashmail_queue WHERE status = 'sent' AND sent_at < ?", (cutoff,)
        )

    def _execute(self, sql: str, params: tuple) -> int:
        with self._lock, self._conn:
            return self._conn.execute(sql, params).rowcount


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class CrashDelivery:
    def __init__(
        self,
        config: BinkpConfig,
        netmail_store: NetmailStore,
        packet_store: PacketStore,
        nodelist: NodelistManager | None = None,
        *,
        crash_queue: CrashmailQueue | None = None,
        session_log: SessionLog | None = None,
        connector: Callable[..., socket.socket] = socket.create_connection,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._settings = config.crashmail
        self._netmail = netmail_store
        self._packets = packet_store
        self._nodelist = nodelist
        self._queue = crash_queue or CrashmailQueue(config.database_path, clock)
        self._session_log = session_log
        self._connector = connector
        self._clock = clock

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def queue(self, netmail_id: int) -> bool:
        """Queue *netmail_id* for crash delivery; already queued counts as success."""
        if not self._settings.enabled:
            log.warning("Crashmail is disabled in configuration")
            return False
        if self._queue.find_by_netmail(netmail_id) is not None:
            log.info("Netmail %d already queued", netmail_id)
            return True
        netmail = self._netmail.get_netmail(netmail_id)
        if netmail is None:
            log.error("Netmail %d not found", netmail_id)
            return False

        dest = netmail["to_address"]
        route = self.resolve_destination(dest)
        self._queue.insert(netmail_id, dest, route.hostname, route.port, self._settings.max_attempts)
        log.info("Queued netmail %d for crash delivery to %s", netmail_id, dest)
        return True

    def resolve_destination(self, address: str) -> CrashRoute:
        """Connection details for *address*, from the nodelist only."""
        password = self._config.get_password_for_address(address)
        fallback = self._settings.fallback_port
        info = self._nodelist.get_crash_route_info(address) if self._nodelist else None
        if not info:
            return CrashRoute(None, fallback, password)

        found = route_from_flags(info.get("flags") or (), fallback)
        if found is None and info.get("hostname"):
            found = (info["hostname"], int(info.get("port") or fallback))
        if found is None:
            log.debug("No IBN/INA/IP/ITN host for %s", address)
            return CrashRoute(None, fallback, password)
        return CrashRoute(
            hostname=found[0],
            port=found[1],
            password=password,
            source="nodelist",
            system_name=info.get("system_name", ""),
            sysop_name=info.get("sysop_name", ""),
        )

    def process_queue(self, limit: int = 10) -> dict[str, int]:
        results = {"processed": 0, "success": 0, "failed": 0, "deferred": 0}
        if not self._settings.enabled:
            return results
        for item in self._queue.due(limit):
            results["processed"] += 1
            status = self.attempt(item)
            if status is CrashStatus.SENT:
                results["success"] += 1
            elif status is CrashStatus.FAILED:
                results["failed"] += 1
            else:
                results["deferred"] += 1
        if results["processed"]:
            log.info("Crashmail run: %(processed)d processed, %(success)d sent, "
                     "%(failed)d failed, %(deferred)d deferred", results)
        return results

    def attempt(self, item: CrashmailItem) -> CrashStatus:
        """One delivery attempt; returns the item's new status. Never raises."""
        self._queue.mark_attempting(item.id)

        host, port = item.destination_host, item.destination_port or self._settings.fallback_port
        try:
            route = self.resolve_destination(item.destination_address)
            if not host:
                if not route.hostname:
                    error = f"Cannot resolve destination: {item.destination_address}"
                    self._queue.mark_failed(item.id, error)
                    log.error("Crashmail %d failed: %s", item.id, error)
                    return CrashStatus.FAILED
                host, port = route.hostname, route.port
                self._queue.set_destination(item.id, host, port)
            self._deliver(item, host, port, route.password)
        except (BinkpError, OSError) as exc:
            return self._retry_later(item, exc)
        except Exception as exc:
            log.exception("Crashmail %d: unexpected error", item.id)
            return self._retry_later(item, exc)

        self._queue.mark_sent(item.id)
        try:
            self._netmail.mark_sent(item.netmail_id)
        except Exception:
            log.exception("Crashmail %d delivered but netmail %d not marked sent",
                          item.id, item.netmail_id)
        log.info("Crashmail %d delivered to %s", item.id, item.destination_address)
        return CrashStatus.SENT

    def cancel(self, queue_id: int) -> bool:
        return self._queue.delete_unsent(queue_id)

    def retry(self, queue_id: int) -> bool:
        return self._queue.reset_failed(queue_id)

    def queue_stats(self) -> dict[str, int]:
        return self._queue.stats()

    def queue_items(self, status: CrashStatus | str | None = None, limit: int = 50) -> list[CrashmailItem]:
        return self._queue.items(status, limit)

    def cleanup_old_items(self, days: int = 7) -> int:
        removed = self._queue.delete_sent_before(self._clock() - days * 86400)
        if removed:
            log.info("Removed %d delivered crashmail item(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _retry_later(self, item: CrashmailItem, exc: Exception) -> CrashStatus:
        status = self._queue.mark_retry(
            item.id, str(exc) or type(exc).__name__, self._settings.retry_interval_minutes * 60)
        if status is CrashStatus.FAILED:
            log.error("Crashmail %d permanently failed: %s", item.id, exc)
        else:
            log.warning("Crashmail %d scheduled for retry: %s", item.id, exc)
        return status

    def _deliver(self, item: CrashmailItem, host: str, port: int, password: str) -> None:
        if not password and not self._settings.allow_insecure:
            raise DeliveryError("No password for destination and insecure delivery disabled")
        netmail = self._netmail.get_netmail(item.netmail_id)
        if netmail is None:
            raise DeliveryError(f"Netmail {item.netmail_id} no longer exists")

        log.info("Attempting delivery to %s via %s:%d", item.destination_address, host, port)
        try:
            sock = self._connector((host, port), timeout=self._config.connect_timeout)
        except OSError as exc:
            raise ConnectError(f"Connection to {host}:{port} failed: {exc}") from exc
        sock.settimeout(self._config.timeout)
        tune(sock)

        session = Session(sock, Role.ORIGINATOR, self._config, password=password,
                          session_log=self._session_log, peer=f"{host}:{port}")
        error: Exception | None = None
        try:
            with tempfile.TemporaryDirectory(prefix="binkp-crash-") as tmp:
                name = f"{int(self._clock()) & 0xFFFFFFFF:08x}.pkt"
                packet = self._packets.write([netmail], item.destination_address, Path(tmp) / name)
                session.handshake()
                session.deliver([packet])
        except Exception as exc:
            error = exc
            raise
        finally:
            session.close()
            self._record(session, error)

    def _record(self, session: Session, error: Exception | None) -> None:
        if self._session_log is None:
            return
        result = session.result()
        result.session_type = SessionType.CRASH_OUTBOUND.value
        if error is not None:
            result.success = False
            result.error = str(error)
            result.error_kind = error.kind if isinstance(error, BinkpError) else ErrorKind.DELIVERY
        record_session(self._session_log, result)
