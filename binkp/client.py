"""
binkp client: calls uplinks and runs originator sessions.

    client = Client(config)
    result = client.poll_uplink("1:153/149")
    if not result.success:
        print(result.error_kind, result.error)

Connection and protocol failures come back inside SessionResult; only a
call that cannot be attempted at all (unknown or disabled uplink) raises
ConfigError.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import BinkpConfig, Uplink
from .errors import ConfigError, ConnectError, ErrorKind
from .inbound import InboundQueue
from .outbound import OutboundQueue
from .progress import AnyProgress
from .protocol import DEFAULT_PORT, tune
from .session import Role, Session, SessionResult
from .session_log import SessionLog, record_session

log = logging.getLogger("binkp.client")

Connector = Callable[..., socket.socket]


@dataclass
class ConnectionProbe:
    success: bool
    connect_time: float
    error: str = ""


class Client:
    def __init__(
        self,
        config: BinkpConfig,
        *,
        session_log: SessionLog | None = None,
        progress: AnyProgress | None = None,
        connector: Connector = socket.create_connection,
    ) -> None:
        self._config = config
        self._session_log = session_log
        self._progress = progress
        self._connector = connector
        self.inbound = InboundQueue(config)
        self.outbound = OutboundQueue(config)

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def connect(
        self,
        address: str,
        hostname: str | None = None,
        port: int | None = None,
        password: str | None = None,
    ) -> SessionResult:
        """Call *address* and run a full originator session."""
        uplink = self._config.get_uplink_by_address(address)
        if uplink is None and not hostname:
            raise ConfigError(f"No uplink configuration found for {address}")

        hostname = hostname or uplink.hostname
        port = port or (uplink.port if uplink else DEFAULT_PORT)
        if password is None:
            password = uplink.password if uplink else ""

        log.info("Connecting to %s:%d (%s)", hostname, port, address)
        if uplink is not None:
            log.debug("Uplink domain %s, networks %s", uplink.domain, ", ".join(uplink.networks))

        started = time.monotonic()
        try:
            sock = self.open_socket(hostname, port)
        except ConnectError as exc:
            log.error("Poll of %s failed: %s", address, exc)
            result = SessionResult(
                success=False,
                role=Role.ORIGINATOR,
                remote_address=address,
                error=str(exc),
                error_kind=exc.kind,
                duration=time.monotonic() - started,
            )
            self._record(result)
            return result

        session = Session(
            sock,
            Role.ORIGINATOR,
            self._config,
            inbound=self.inbound,
            outbound=self.outbound,
            uplink=uplink,
            password=password,
            session_log=self._session_log,
            progress=self._progress,
            peer=f"{hostname}:{port}",
        )
        result = session.run()
        if not result.remote_address:
            result.remote_address = address
        if result.success:
            log.info("Session with %s complete: %d sent, %d received",
                     address, len(result.files_sent), len(result.files_received))
        self._record(result)
        return result

    def poll_uplink(self, address: str) -> SessionResult:
        uplink = self._config.get_uplink_by_address(address)
        if uplink is None:
            raise ConfigError(f"Uplink not found: {address}")
        if not uplink.enabled:
            raise ConfigError(f"Uplink disabled: {address}")
        return self.connect(uplink.address, uplink.hostname, uplink.port, uplink.password)

    def poll_all_uplinks(self, queued_only: bool = False) -> dict[str, SessionResult]:
        """Poll every enabled uplink in turn; one failure never stops the rest."""
        self.outbound.recover_stale()
        results: dict[str, SessionResult] = {}
        for uplink in self._config.get_enabled_uplinks():
            if queued_only and not self.outbound.has_packets_for(uplink):
                log.debug("Nothing queued for %s, skipping poll", uplink.address)
                continue
            log.info("Polling uplink %s", uplink.address)
            try:
                results[uplink.address] = self.poll_uplink(uplink.address)
            except ConfigError as exc:
                log.error("Cannot poll %s: %s", uplink.address, exc)
                results[uplink.address] = SessionResult(
                    success=False, role=Role.ORIGINATOR, remote_address=uplink.address,
                    error=str(exc), error_kind=ErrorKind.CONFIG,
                )
        return results

    def test_connection(self, hostname: str, port: int = DEFAULT_PORT,
                        timeout: float = 30) -> ConnectionProbe:
        """Bare TCP connect, no protocol; used for health checks."""
        log.info("Testing connection to %s:%d", hostname, port)
        start = time.monotonic()
        try:
            sock = self._connector((hostname, port), timeout=timeout)
        except OSError as exc:
            return ConnectionProbe(False, time.monotonic() - start, str(exc))
        elapsed = time.monotonic() - start
        sock.close()
        return ConnectionProbe(True, elapsed)

    def send_file(self, address: str, path: str | Path) -> SessionResult:
        """Queue *path* in outbound and poll *address* right away."""
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        if path.resolve().parent != self.outbound.path.resolve():
            self.outbound.add(path)
        return self.poll_uplink(address)

    def uplink_status(self, timeout: float = 10) -> dict[str, tuple[Uplink, ConnectionProbe]]:
        status = {}
        for uplink in self._config.uplinks:
            status[uplink.address] = (uplink, self.test_connection(uplink.hostname, uplink.port, timeout))
        return status

    def open_socket(self, hostname: str, port: int) -> socket.socket:
        try:
            sock = self._connector((hostname, port), timeout=self._config.connect_timeout)
        except OSError as exc:
            raise ConnectError(f"Failed to connect to {hostname}:{port}: {exc}") from exc
        sock.settimeout(self._config.timeout)
        tune(sock)
        log.info("Connected to %s:%d", hostname, port)
        return sock

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _record(self, result: SessionResult) -> None:
        if self._session_log is not None:
            record_session(self._session_log, result)
