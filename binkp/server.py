"""
binkp server: accepts incoming connections and answers them.

Accept loop
-----------
    Runs in a daemon thread, polling accept() with a 1 s timeout so stop()
    is noticed promptly. Each accepted connection gets its own worker
    thread running an answering Session; at max_connections the new
    connection is sent M_BSY and closed.

Aggregator
----------
    Workers post their SessionResult to a queue. One aggregator thread
    drains it, writes the session log and calls the on_session callback,
    so callers see results one at a time in completion order.
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
from pathlib import Path
from typing import Callable

from .config import BinkpConfig
from .errors import TransportError
from .inbound import InboundQueue
from .progress import AnyProgress
from .protocol import Command, encode_command, tune, write_frame
from .session import Role, Session, SessionResult
from .session_log import SessionLog, record_session

log = logging.getLogger("binkp.server")

ACCEPT_TIMEOUT = 1.0
BUSY_MESSAGE = "Too many connections, try again later"


class Server:
    def __init__(
        self,
        config: BinkpConfig,
        *,
        session_log: SessionLog | None = None,
        on_session: Callable[[SessionResult], None] | None = None,
        progress: AnyProgress | None = None,
    ) -> None:
        self._config = config
        self._session_log = session_log
        self._on_session = on_session
        self._progress = progress
        self.inbound = InboundQueue(config)

        self._server_sock: socket.socket | None = None
        self._stop_event = threading.Event()
        self._accept_thread: threading.Thread | None = None
        self._aggregator: threading.Thread | None = None
        self._results: queue.Queue[SessionResult] = queue.Queue()
        self._lock = threading.Lock()
        self._active = 0

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port); useful when configured with port 0."""
        if self._server_sock is None:
            raise RuntimeError("Server not started")
        return self._server_sock.getsockname()[:2]

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def start(self) -> None:
        Path(self._config.inbound_path).mkdir(parents=True, exist_ok=True)
        self._server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server_sock.bind((self._config.bind_address, self._config.port))
        self._server_sock.listen(self._config.max_connections)
        self._server_sock.settimeout(ACCEPT_TIMEOUT)
        self._accept_thread = threading.Thread(
            target=self._accept_loop, daemon=True, name="binkp-accept"
        )
        self._aggregator = threading.Thread(
            target=self._aggregate_loop, daemon=True, name="binkp-results"
        )
        self._accept_thread.start()
        self._aggregator.start()
        host, port = self.address
        log.info("binkp server listening on %s:%d", host, port)

    def stop(self) -> None:
        """Stop accepting. Sessions already running finish on their own."""
        self._stop_event.set()
        if self._server_sock:
            try:
                self._server_sock.close()
            except OSError:
                pass
        if self._accept_thread:
            self._accept_thread.join(timeout=5)
        if self._aggregator:
            self._aggregator.join(timeout=5)
        log.info("binkp server stopped")

    def wait(self) -> None:
        """Block until Ctrl-C."""
        try:
            self._stop_event.wait()
        except KeyboardInterrupt:
            self.stop()

    def get_connection_count(self) -> int:
        with self._lock:
            return self._active

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _accept_loop(self) -> None:
        server_sock = self._server_sock
        if server_sock is None:
            return
        while not self._stop_event.is_set():
            try:
                conn, addr = server_sock.accept()
            except TimeoutError:
                continue
            except OSError:
                break
            log.info("Incoming connection from %s:%d", addr[0], addr[1])
            with self._lock:
                busy = self._active >= self._config.max_connections
                if not busy:
                    self._active += 1
            if busy:
                self._reject_busy(conn, addr)
                continue
            t = threading.Thread(
                target=self._handle_connection,
                args=(conn, addr),
                daemon=True,
                name=f"binkp-session-{addr[0]}",
            )
            t.start()

    def _reject_busy(self, conn: socket.socket, addr: tuple) -> None:
        log.warning("Max connections (%d) reached, rejecting %s",
                    self._config.max_connections, addr[0])
        try:
            write_frame(conn, encode_command(Command.M_BSY, BUSY_MESSAGE))
        except TransportError as exc:
            log.debug("Could not send M_BSY to %s: %s", addr[0], exc)
        finally:
            conn.close()

    def _handle_connection(self, conn: socket.socket, addr: tuple) -> None:
        try:
            conn.settimeout(self._config.timeout)
            tune(conn)
            session = Session(
                conn,
                Role.ANSWERER,
                self._config,
                inbound=self.inbound,
                session_log=self._session_log,
                progress=self._progress,
                peer=addr[0],
            )
            self._results.put(session.run())
        except Exception as exc:
            log.error("Error handling %s: %s", addr[0], exc, exc_info=True)
            conn.close()
        finally:
            with self._lock:
                self._active -= 1

    def _aggregate_loop(self) -> None:
        while True:
            try:
                result = self._results.get(timeout=ACCEPT_TIMEOUT)
            except queue.Empty:
                if self._stop_event.is_set() and self.get_connection_count() == 0:
                    break
                continue
            self._publish(result)

    def _publish(self, result: SessionResult) -> None:
        if result.success:
            log.info("Session from %s done: %d file(s) received",
                     result.remote_address or result.remote_ip, len(result.files_received))
        else:
            log.warning("Session from %s failed (%s): %s",
                        result.remote_address or result.remote_ip,
                        result.error_kind.value if result.error_kind else "unknown",
                        result.error)
        if self._session_log is not None:
            record_session(self._session_log, result)
        if self._on_session is not None:
            try:
                self._on_session(result)
            except Exception as exc:
                log.error("on_session callback failed: %s", exc, exc_info=True)
