"""
binkp session: one peer connection, originator or answerer side.

Handshake
---------
    Both sides send M_NUL system info and M_ADR up front.
    Originator:  ADR received → M_PWD → wait for M_OK → AUTHENTICATED
    Answerer:    ADR received → wait for M_PWD → M_OK → AUTHENTICATED
    An answerer with any CRAM-enabled uplink adds "OPT CRAM-MD5-<hex>" to
    its M_NUL lines; an originator whose uplink has crypt answers with an
    HMAC-MD5 digest instead of the plain password.

Transfer
--------
    The originator claims its outbound batch, streams each file as
    M_FILE + data frames, and waits for M_GOT per file. Both sides then
    trade M_EOB; the session terminates only once an EOB has been sent
    and one has been received.

Session.run() never raises: failures come back as SessionResult values
carrying an ErrorKind.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import socket
import time
import uuid
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable

from .address import normalize_address
from .config import BinkpConfig, Uplink
from .errors import (
    AuthError,
    BinkpError,
    ConfigError,
    ConnectionClosed,
    DeliveryError,
    ErrorKind,
    ProtocolError,
    RemoteBusy,
    RemoteError,
    TransportError,
)
from .inbound import InboundQueue, safe_name
from .integrity import hash_file
from .outbound import Claim, OutboundFile, OutboundQueue, chunk_file, match_name
from .progress import RECEIVE, SEND, AnyProgress, NullProgress
from .protocol import Command, Frame, encode_command, encode_data, read_frame, write_frame
from .session_log import SessionLog

log = logging.getLogger("binkp.session")

PROGRAM_VERSION = "binkp-py/1.0"

_CRAM_OPT_RE = re.compile(r"CRAM-MD5-([0-9a-fA-F]{16,})")
_CRAM_PWD_RE = re.compile(r"^CRAM-MD5-([0-9a-fA-F]{32})$", re.IGNORECASE)
_NO_PASSWORD = ("", "-")


class SessionState(IntEnum):
    INIT = 0
    ADDR_SENT = 1
    ADDR_RECEIVED = 2
    PWD_SENT = 3
    AUTHENTICATED = 4
    FILE_TRANSFER = 5
    EOB_SENT = 6
    EOB_RECEIVED = 7
    TERMINATED = 8


class Role(str, Enum):
    ORIGINATOR = "originator"
    ANSWERER = "answerer"


class SessionType(str, Enum):
    SECURE = "secure"
    INSECURE = "insecure"
    CRASH_OUTBOUND = "crash_outbound"


class AuthMethod(str, Enum):
    NONE = ""
    PLAINTEXT = "plaintext"
    CRAM_MD5 = "cram-md5"


# ---------------------------------------------------------------------------
# CRAM-MD5 (FTS-1027)
# ---------------------------------------------------------------------------

def cram_challenge() -> str:
    """16 random bytes as 32 hex characters."""
    return secrets.token_hex(16)


def cram_digest(challenge: str, password: str) -> str:
    """HMAC-MD5 of the binary challenge keyed by the password, as hex."""
    return hmac.new(password.encode("utf-8"), bytes.fromhex(challenge), hashlib.md5).hexdigest()


def parse_cram_challenge(text: str) -> str | None:
    m = _CRAM_OPT_RE.search(text)
    if m is None or len(m.group(1)) % 2:
        return None
    return m.group(1)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ReceivedFile:
    name: str
    path: Path
    size: int
    digest: str


@dataclass
class SessionResult:
    success: bool
    role: Role
    remote_address: str = ""
    remote_address_with_domain: str = ""
    remote_ip: str = ""
    files_sent: list[str] = field(default_factory=list)
    files_received: list[str] = field(default_factory=list)
    received: list[ReceivedFile] = field(default_factory=list)
    auth_method: str = ""
    session_type: str = SessionType.SECURE.value
    bytes_sent: int = 0
    bytes_received: int = 0
    final_state: SessionState = SessionState.INIT
    error: str = ""
    error_kind: ErrorKind | None = None
    duration: float = 0.0

    @property
    def inbound(self) -> bool:
        return self.role is Role.ANSWERER


@dataclass
class CurrentFile:
    name: str
    size: int
    timestamp: int
    offset: int
    received: int
    handle: BinaryIO
    stack: ExitStack = field(default_factory=ExitStack)
    fp: Any = None


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Session:
    """
    Drives one binkp connection. The session owns *sock* and closes it in
    close(); callers build it, call run() (or handshake() + deliver()) and
    read the result.
    """

    def __init__(
        self,
        sock: socket.socket,
        role: Role,
        config: BinkpConfig,
        *,
        inbound: InboundQueue | None = None,
        outbound: OutboundQueue | None = None,
        uplink: Uplink | None = None,
        password: str | None = None,
        session_log: SessionLog | None = None,
        progress: AnyProgress | None = None,
        peer: str = "",
        session_id: str | None = None,
    ) -> None:
        self.sock = sock
        self.role = Role(role)
        self.config = config
        self.timing = config.timing
        self.uplink = uplink
        if password is None:
            password = uplink.password if uplink else ""
        self.password = password
        self.peer = peer
        self.session_id = session_id or uuid.uuid4().hex[:12]

        self.state = SessionState.INIT
        self.authenticated = False
        self.remote_address = ""
        self.remote_address_with_domain = ""
        self.remote_info: dict[str, str] = {}
        self.session_type = SessionType.SECURE
        self.auth_method = AuthMethod.NONE
        self.insecure = False

        self.files_sent: list[str] = []
        self.files_received: list[str] = []
        self.received: list[ReceivedFile] = []
        self.confirmed: list[str] = []
        self.current_file: CurrentFile | None = None
        self.bytes_sent = 0
        self.bytes_received = 0
        self.eob_sent = False
        self.eob_received = False

        self._inbound = inbound or InboundQueue(config)
        self._outbound = outbound
        self._claim: Claim | None = None
        self._sending: dict[str, OutboundFile] = {}
        self._session_log = session_log
        self._progress = progress or NullProgress()
        self._challenge: str | None = None
        self._use_cram = False
        self._closing = False
        self._error: BaseException | None = None
        self._started = time.monotonic()

        if sock.gettimeout() is None:
            sock.settimeout(config.timeout)

    @property
    def is_originator(self) -> bool:
        return self.role is Role.ORIGINATOR

    @property
    def label(self) -> str:
        return self.remote_address or self.peer or "peer"

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def run(self) -> SessionResult:
        """Handshake, transfer, close. Failures are returned, not raised."""
        try:
            self.handshake()
            self.process()
        except (BinkpError, OSError) as exc:
            self._error = exc
            log.error("Session with %s failed: %s", self.label, exc)
        finally:
            self.close()
        return self.result()

    def handshake(self) -> None:
        """Exchange addresses and authenticate. Raises on failure."""
        try:
            self._send_system_info()
            self._send_address()
            self.state = SessionState.ADDR_SENT
            while self.state < SessionState.AUTHENTICATED:
                frame = read_frame(self.sock)
                log.debug("%s < %s", self.label, frame)
                self._handshake_frame(frame)
        except BinkpError as exc:
            log.error("Handshake with %s failed: %s", self.label, exc)
            self._report_failure(exc)
            self._error = exc
            self.state = SessionState.TERMINATED
            raise
        self.authenticated = True
        log.info("Handshake with %s complete (%s, %s)",
                 self.label, self.session_type.value, self.auth_method.value or "no password")

    def process(self) -> None:
        """Transfer phase through the EOB exchange. Raises on failure."""
        self.state = SessionState.FILE_TRANSFER
        try:
            if self.is_originator:
                self._send_outbound()
                if self._sending:
                    self._await_confirmations()

            if not self.is_originator or self.files_sent:
                self._pump(lambda: self.eob_sent or self.eob_received,
                           self.timing.settle_timeout)

            if self.current_file is None and self.state == SessionState.FILE_TRANSFER:
                grace = (self.timing.eob_grace_after_send if self.files_sent
                         else self.timing.eob_grace)
                self._pump(lambda: self.current_file is not None
                           or self.state != SessionState.FILE_TRANSFER, grace)

            self._closing = True
            self._maybe_send_eob()
            self._await_termination()
        except BinkpError as exc:
            self._report_failure(exc)
            raise
        finally:
            self.cleanup()

        if self.state == SessionState.TERMINATED:
            log.info("Session with %s complete: %d sent, %d received",
                     self.label, len(self.confirmed), len(self.files_received))
        else:
            log.warning("Session with %s ended in state %s", self.label, self.state.name)

    def deliver(self, paths: Iterable[Path | str], timeout: float | None = None) -> None:
        """
        One-shot send used for crashmail: send *paths*, send EOB, and wait up
        to *timeout* seconds for M_GOT on every file. Raises DeliveryError
        when a file is left unconfirmed. A missing remote EOB is only logged.
        """
        timeout = self.timing.crash_confirm_timeout if timeout is None else timeout
        self.state = SessionState.FILE_TRANSFER
        try:
            for path in paths:
                self._send_file(OutboundFile.from_path(Path(path)))
            self._closing = True
            self._send_eob()
            try:
                self._pump(lambda: not self._sending and self.eob_received, timeout)
            except ConnectionClosed:
                if self._sending:
                    raise
                log.warning("%s closed the connection after confirming", self.label)
            if self._sending:
                raise DeliveryError(
                    f"No M_GOT from {self.label} for {', '.join(self._sending)} within {timeout:g}s")
            if not self.eob_received:
                log.warning("No M_EOB from %s; delivery confirmed by M_GOT", self.label)
        finally:
            self.cleanup()

    def result(self) -> SessionResult:
        exc = self._error
        if isinstance(exc, BinkpError):
            kind: ErrorKind | None = exc.kind
        elif exc is not None:
            kind = ErrorKind.DATA
        else:
            kind = None
        return SessionResult(
            success=exc is None and self.authenticated,
            role=self.role,
            remote_address=self.remote_address,
            remote_address_with_domain=self.remote_address_with_domain,
            remote_ip=self.peer,
            files_sent=list(self.confirmed),
            files_received=list(self.files_received),
            received=list(self.received),
            auth_method=self.auth_method.value,
            session_type=self.session_type.value,
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
            final_state=self.state,
            error=str(exc) if exc is not None else "",
            error_kind=kind,
            duration=time.monotonic() - self._started,
        )

    def cleanup(self) -> None:
        """Drop a half-received file and hand unconfirmed outbound files back."""
        cf = self.current_file
        if cf is not None:
            cf.handle.close()
            cf.stack.close()
            if cf.received < cf.size:
                self._inbound.discard_partial(cf.name, self.session_id)
            self.current_file = None
        if self._claim is not None:
            self._claim.release_all()
            self._claim = None
        self._sending.clear()

    def close(self) -> None:
        self.cleanup()
        try:
            self.sock.close()
        except OSError:
            pass

    # ------------------------------------------------------------------
    # Frame I/O
    # ------------------------------------------------------------------

    def _send(self, frame: Frame) -> None:
        write_frame(self.sock, frame)
        if frame.is_command:
            log.debug("%s > %s", self.label, frame)

    def _send_command(self, command: Command, data: str = "") -> None:
        self._send(encode_command(command, data))

    def _send_error(self, message: str) -> None:
        try:
            self._send_command(Command.M_ERR, message)
        except TransportError as exc:
            log.debug("Could not send M_ERR to %s: %s", self.label, exc)

    def _report_failure(self, exc: BinkpError) -> None:
        """Tell the peer why we are hanging up, unless the peer or the link is the cause."""
        if not isinstance(exc, (RemoteError, RemoteBusy, TransportError)):
            self._send_error(exc.detail or str(exc))

    def _pump(self, until: Callable[[], bool], timeout: float,
              inactivity: float | None = None) -> bool:
        """Process incoming frames until *until()* holds or time runs out."""
        start = last = time.monotonic()
        while not until():
            now = time.monotonic()
            if now - start >= timeout:
                return False
            if inactivity is not None and now - last >= inactivity:
                log.warning("No activity from %s for %.0fs", self.label, now - last)
                return False
            frame = read_frame(self.sock, non_blocking=True)
            if frame is None:
                continue
            last = time.monotonic()
            log.debug("%s < %s", self.label, frame)
            self._transfer_frame(frame)
        return True

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def _send_system_info(self) -> None:
        system = self.config.system
        self._send_command(Command.M_NUL, f"SYS {system.name}")
        self._send_command(Command.M_NUL, f"ZYZ {system.sysop}")
        self._send_command(Command.M_NUL, f"LOC {system.location}")
        self._send_command(Command.M_NUL, f"VER {PROGRAM_VERSION} binkp/1.0")
        self._send_command(Command.M_NUL,
                           "TIME " + time.strftime("%a, %d %b %Y %H:%M:%S", time.gmtime()) + " UTC")
        if not self.is_originator and self.config.has_crypt_uplink():
            self._challenge = cram_challenge()
            self._send_command(Command.M_NUL, f"OPT CRAM-MD5-{self._challenge}")

    def _send_address(self) -> None:
        if self.uplink is not None and self.uplink.me:
            text = self.uplink.adr_line
        else:
            text = " ".join(self.config.get_my_addresses())
        if not text:
            raise ConfigError("No local FTN address configured")
        self._send_command(Command.M_ADR, text)

    def _send_password(self) -> None:
        password = self.password
        if self._use_cram and self._challenge is not None:
            self.auth_method = AuthMethod.CRAM_MD5
            self._send_command(Command.M_PWD, f"CRAM-MD5-{cram_digest(self._challenge, password)}")
            return
        self.auth_method = AuthMethod.PLAINTEXT
        log.debug("Sending password (length=%d) to %s", len(password), self.label)
        self._send_command(Command.M_PWD, password or "-")

    def _handshake_frame(self, frame: Frame) -> None:
        if not frame.is_command:
            raise ProtocolError("Data frame during handshake")
        cmd = frame.command
        if cmd == Command.M_ADR:
            self._on_address(frame.text)
        elif cmd == Command.M_PWD:
            self._on_password(frame.text)
        elif cmd == Command.M_OK:
            self._on_ok(frame.text)
        elif cmd == Command.M_NUL:
            self._on_nul(frame.text)
        elif cmd == Command.M_ERR:
            raise RemoteError(f"Remote error: {frame.text}")
        elif cmd == Command.M_BSY:
            raise RemoteBusy(f"Remote busy: {frame.text}")
        else:
            log.warning("Unexpected %s from %s during handshake", frame.command_name, self.label)

    def _on_nul(self, text: str) -> None:
        key, _, value = text.partition(" ")
        self.remote_info[key] = value
        challenge = parse_cram_challenge(text) if key == "OPT" else None
        if challenge is not None and self.is_originator:
            self._challenge = challenge
            if self.uplink is not None and self.uplink.crypt:
                self._use_cram = True
                log.debug("%s offers CRAM-MD5; using it", self.label)

    def _on_address(self, text: str) -> None:
        addresses = text.split()
        if not addresses:
            raise ProtocolError("Empty M_ADR")
        chosen = None
        for raw in addresses:
            addr = normalize_address(raw)
            if addr and self.config.get_uplink_by_address(addr) is not None:
                chosen = (addr, raw)
                break
        if chosen is None:
            chosen = (normalize_address(addresses[0]), addresses[0])
        self.remote_address, self.remote_address_with_domain = chosen
        log.debug("Remote presented %s; using %s", text, self.remote_address)

        if self.uplink is not None and self.uplink.address != self.remote_address:
            log.warning("Called %s but remote presented %s", self.uplink.address, text)

        if self.state == SessionState.INIT:
            self._send_address()
            if self.is_originator:
                self._send_password()
                self.state = SessionState.PWD_SENT
            else:
                self.state = SessionState.ADDR_RECEIVED
        elif self.state == SessionState.ADDR_SENT:
            if self.is_originator:
                self._send_password()
                self.state = SessionState.PWD_SENT
            else:
                self.state = SessionState.ADDR_RECEIVED
        else:
            log.debug("Repeated M_ADR from %s ignored", self.label)

    def _on_password(self, text: str) -> None:
        if self.is_originator:
            log.warning("Ignoring M_PWD from answering side %s", self.label)
            return
        if not self.remote_address:
            raise ProtocolError("M_PWD before M_ADR")
        if not self._validate_password(text):
            raise AuthError(f"Authentication failed for {self.remote_address}")
        self._send_command(Command.M_OK, "insecure" if self.insecure else "secure")
        self.state = SessionState.AUTHENTICATED

    def _on_ok(self, text: str) -> None:
        if not self.is_originator or self.state != SessionState.PWD_SENT:
            log.debug("Ignoring M_OK from %s in state %s", self.label, self.state.name)
            return
        lowered = text.strip().lower()
        secure = "insecure" not in lowered and "non-secure" not in lowered
        if not secure:
            if self.password not in _NO_PASSWORD:
                raise AuthError(
                    f"Password rejected: {self.label} accepted the session as non-secure; "
                    "check the password configured on both ends")
            self.session_type = SessionType.INSECURE
        self.state = SessionState.AUTHENTICATED

    def _validate_password(self, password: str) -> bool:
        if password in _NO_PASSWORD:
            return self._allow_insecure()

        expected = self.config.get_password_for_address(self.remote_address)
        m = _CRAM_PWD_RE.match(password)
        if m is not None:
            if self._challenge is None:
                log.warning("%s sent a CRAM-MD5 response but no challenge was issued", self.label)
                return False
            received = m.group(1).lower()
            if hmac.compare_digest(cram_digest(self._challenge, expected), received):
                if expected in _NO_PASSWORD:
                    return self._allow_insecure()
                self.auth_method = AuthMethod.CRAM_MD5
                return True
            for blank in _NO_PASSWORD:
                if hmac.compare_digest(cram_digest(self._challenge, blank), received):
                    return self._allow_insecure()
            log.warning("CRAM-MD5 digest mismatch for %s", self.remote_address)
            return False

        if self._challenge is not None and not self.config.security.allow_plaintext_fallback:
            log.warning("Plain-text password from %s rejected: CRAM-MD5 required", self.label)
            return False
        if not expected:
            log.warning("No password configured for %s", self.remote_address)
            return False
        ok = hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8"))
        log.debug("Password check for %s: received len=%d, expected len=%d, %s",
                  self.remote_address, len(password), len(expected), "OK" if ok else "FAILED")
        if ok:
            self.auth_method = AuthMethod.PLAINTEXT
        return ok

    def _allow_insecure(self) -> bool:
        security = self.config.security
        addr = self.remote_address
        if not security.allow_insecure_inbound:
            log.warning("Insecure session from %s refused: disabled", addr)
            return False
        allowlist = [normalize_address(a) for a in security.insecure_allowlist]
        if allowlist and addr not in allowlist:
            log.warning("Insecure session from %s refused: not in allowlist", addr)
            return False
        limit = security.max_insecure_sessions_per_hour
        if limit > 0 and self._session_log is not None:
            if self._session_log.count_recent_insecure(addr, 60) >= limit:
                log.warning("Insecure session from %s refused: rate limit exceeded", addr)
                return False
        self.insecure = True
        self.session_type = SessionType.INSECURE
        self.auth_method = AuthMethod.PLAINTEXT
        log.info("Insecure session accepted for %s", addr)
        return True

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def _transfer_frame(self, frame: Frame) -> None:
        if not frame.is_command:
            self._on_data(frame.payload)
            return
        cmd = frame.command
        if cmd == Command.M_FILE:
            self._on_file(frame.text)
        elif cmd == Command.M_GOT:
            self._on_got(frame.text)
        elif cmd == Command.M_EOB:
            self._on_eob()
        elif cmd == Command.M_SKIP:
            self._on_skip(frame.text)
        elif cmd == Command.M_GET:
            log.info("%s requested %s; M_GET is not supported", self.label, frame.text)
        elif cmd in (Command.M_NUL, Command.M_OK):
            log.debug("%s from %s during transfer: %s", frame.command_name, self.label, frame.text)
        elif cmd == Command.M_ERR:
            raise RemoteError(f"Remote error: {frame.text}")
        elif cmd == Command.M_BSY:
            raise RemoteBusy(f"Remote busy: {frame.text}")
        else:
            log.warning("Unexpected %s from %s during transfer", frame.command_name, self.label)

    # --- sending -------------------------------------------------------

    def _send_outbound(self) -> None:
        outbound = self._outbound or OutboundQueue(self.config)
        self._claim = outbound.claim(self.session_id, self.uplink)
        entries = list(self._claim.files.values())
        if not entries:
            log.debug("Nothing queued for %s", self.label)
            return
        log.info("Sending %d file(s) to %s", len(entries), self.label)
        for entry in entries:
            self._send_file(entry)

    def _send_file(self, entry: OutboundFile) -> None:
        self._send_command(Command.M_FILE, entry.file_line())
        sent = 0
        with self._progress.file(entry.name, entry.size, SEND, peer=self.label) as fp:
            for block in chunk_file(entry.path):
                self._send(encode_data(block))
                sent += len(block)
                fp.advance(len(block))
        self.bytes_sent += sent
        if sent != entry.size:
            log.error("Send of %s incomplete (%d/%d bytes)", entry.name, sent, entry.size)
            return
        self.files_sent.append(entry.name)
        self._sending[entry.name] = entry
        log.info("Sent %s (%d bytes) to %s", entry.name, sent, self.label)

    def _await_confirmations(self) -> None:
        done = self._pump(lambda: not self._sending,
                          self.timing.got_timeout, self.timing.got_inactivity)
        if done:
            log.debug("All sent files confirmed by %s", self.label)
        else:
            log.warning("%d file(s) not confirmed by %s: %s",
                        len(self._sending), self.label, ", ".join(self._sending))

    def _on_got(self, text: str) -> None:
        name = text.split(" ", 1)[0]
        key = match_name(name, self._sending)
        if key is None:
            log.warning("M_GOT from %s for unknown file: %s", self.label, name)
            return
        del self._sending[key]
        self.confirmed.append(key)
        if self._claim is not None:
            self._claim.confirm(key)
        log.info("%s confirmed %s", self.label, key)
        if self._closing and self.eob_received:
            self._maybe_send_eob()

    def _on_skip(self, text: str) -> None:
        name = text.split(" ", 1)[0]
        key = match_name(name, self._sending)
        if key is None:
            log.info("%s skipped %s", self.label, name)
            return
        del self._sending[key]
        self.files_sent.remove(key)
        if self._claim is not None:
            self._claim.release(key)
        log.info("%s skipped %s; left in outbound", self.label, key)

    # --- receiving -----------------------------------------------------

    def _on_file(self, text: str) -> None:
        parts = text.split()
        if not parts:
            log.warning("Empty M_FILE from %s", self.label)
            return
        try:
            size = int(parts[1]) if len(parts) > 1 else 0
            timestamp = int(parts[2]) if len(parts) > 2 else int(time.time())
            offset = int(parts[3]) if len(parts) > 3 else 0
        except ValueError:
            log.warning("Malformed M_FILE from %s: %r", self.label, text)
            self._send_command(Command.M_SKIP, " ".join(parts[:3]))
            return

        if self.current_file is not None:
            log.warning("M_FILE for %s while %s is incomplete", parts[0], self.current_file.name)
            self._abort_current()

        name = safe_name(parts[0])
        if name is None:
            log.error("Invalid file name in M_FILE from %s: %r", self.label, text)
            self._send_command(Command.M_SKIP, f"{parts[0]} {size} {timestamp}")
            return

        handle = self._inbound.open_partial(name, self.session_id, offset)
        if handle is None:
            self._send_command(Command.M_SKIP, f"{name} {size} {timestamp}")
            return

        cf = CurrentFile(name=name, size=size, timestamp=timestamp, offset=offset,
                         received=offset, handle=handle)
        self.current_file = cf
        cf.fp = cf.stack.enter_context(
            self._progress.file(name, size, RECEIVE, completed=offset, peer=self.label))
        log.info("Receiving %s (%d bytes%s) from %s", name, size,
                 f", resuming at {offset}" if offset else "", self.label)
        if cf.received >= cf.size:
            self._complete_file()

    def _on_data(self, payload: bytes) -> None:
        cf = self.current_file
        if cf is None:
            log.warning("Data frame from %s with no file in progress (%d bytes)",
                        self.label, len(payload))
            return
        remaining = cf.size - cf.received
        if len(payload) > remaining:
            log.warning("%s sent %d bytes past the end of %s", self.label,
                        len(payload) - remaining, cf.name)
            payload = payload[:remaining]
        cf.handle.write(payload)
        cf.received += len(payload)
        self.bytes_received += len(payload)
        cf.fp.advance(len(payload))
        if cf.received >= cf.size:
            self._complete_file()

    def _complete_file(self) -> None:
        cf = self.current_file
        if cf is None:
            return
        cf.handle.close()
        cf.stack.close()
        metadata = None
        if self.insecure and cf.name.lower().endswith(".pkt"):
            metadata = {
                "insecure_session": True,
                "remote_address": self.remote_address or "unknown",
                "received_at": int(time.time()),
            }
        final = self._inbound.finalize(cf.name, self.session_id, cf.timestamp, metadata)
        self.files_received.append(final.name)
        self.received.append(ReceivedFile(final.name, final, cf.size, hash_file(final)))
        self.current_file = None
        log.info("Received %s (%d bytes) from %s", final.name, cf.size, self.label)
        self._send_command(Command.M_GOT, f"{cf.name} {cf.size} {cf.timestamp}")
        if self._closing:
            self._maybe_send_eob()

    def _abort_current(self) -> None:
        cf = self.current_file
        if cf is None:
            return
        cf.handle.close()
        cf.stack.close()
        self._inbound.discard_partial(cf.name, self.session_id)
        self.current_file = None

    # --- end of batch --------------------------------------------------

    def _send_eob(self) -> None:
        self._send_command(Command.M_EOB)
        self.eob_sent = True
        self.state = SessionState.TERMINATED if self.eob_received else SessionState.EOB_SENT

    def _maybe_send_eob(self) -> None:
        if not self.eob_sent and self.current_file is None:
            self._send_eob()

    def _on_eob(self) -> None:
        self.eob_received = True
        if self.eob_sent:
            self.state = SessionState.TERMINATED
            return
        if self.state < SessionState.EOB_RECEIVED:
            self.state = SessionState.EOB_RECEIVED
        if self.current_file is None and not self._sending:
            self._send_eob()

    def _await_termination(self) -> None:
        if self.state == SessionState.TERMINATED:
            return
        try:
            done = self._pump(lambda: self.state == SessionState.TERMINATED,
                              self.timing.eob_timeout, self.timing.eob_inactivity)
        except ConnectionClosed:
            if not self.eob_sent:
                raise
            log.warning("%s closed the connection before sending M_EOB", self.label)
            return
        if not done:
            log.warning("EOB exchange with %s timed out (state %s)", self.label, self.state.name)
