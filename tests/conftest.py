from __future__ import annotations

import json
import os
import socket
import threading
from pathlib import Path
from typing import Any

import pytest

from binkp.config import BinkpConfig, SystemInfo, Timing, Uplink
from binkp.packet import build_packet_header
from binkp.protocol import Command, Frame, encode_command, encode_data, read_frame, write_frame
from binkp.session import Role, Session

NODE_A = "1:153/150"      # calls out
NODE_B = "1:153/149"      # answers
PASSWORD = "secret"


def make_config(root: Path, me: str, peer: str, password: str = PASSWORD) -> BinkpConfig:
    return BinkpConfig(
        system=SystemInfo(name=f"Node {me}", address=me, sysop="Test Sysop", location="Testville"),
        port=0,
        bind_address="127.0.0.1",
        timeout=5,
        connect_timeout=2,
        max_connections=4,
        inbound_path=root / "inbound",
        outbound_path=root / "outbound",
        database_path=root / "binkp.sqlite3",
        timing=Timing(
            got_timeout=3,
            got_inactivity=2,
            settle_timeout=0.5,
            eob_grace=0.2,
            eob_grace_after_send=0.3,
            eob_timeout=3,
            eob_inactivity=2,
            crash_confirm_timeout=3,
        ),
        uplinks=[Uplink(address=peer, hostname="127.0.0.1", password=password,
                        networks=["1:*/*"], me=me)],
    )


@pytest.fixture
def originator_config(tmp_path: Path) -> BinkpConfig:
    cfg = make_config(tmp_path / "a", NODE_A, NODE_B)
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def answerer_config(tmp_path: Path) -> BinkpConfig:
    cfg = make_config(tmp_path / "b", NODE_B, NODE_A)
    cfg.ensure_directories()
    return cfg


def write_packet(directory: Path, name: str, size: int = 1024,
                 dest: tuple[int, int, int] = (1, 153, 149),
                 orig: tuple[int, int, int] = (1, 153, 150),
                 mtime: int | None = None) -> Path:
    """A .pkt of exactly *size* bytes with a valid header."""
    header = build_packet_header(orig, dest)
    body = bytes(i % 251 for i in range(max(size - len(header), 0)))
    path = directory / name
    path.write_bytes((header + body)[:size])
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def session_pair():
    """Run an originating and an answering Session against each other."""

    def run(orig_cfg: BinkpConfig, ans_cfg: BinkpConfig, **answerer_kwargs: Any):
        a, b = socket.socketpair()
        originator = Session(a, Role.ORIGINATOR, orig_cfg, uplink=orig_cfg.uplinks[0], peer="orig")
        answerer = Session(b, Role.ANSWERER, ans_cfg, peer="ans", **answerer_kwargs)
        box: dict[str, Any] = {}
        t = threading.Thread(target=lambda: box.setdefault("result", answerer.run()))
        t.start()
        orig_result = originator.run()
        t.join(timeout=15)
        assert not t.is_alive()
        return orig_result, box["result"], originator, answerer

    return run


# ---------------------------------------------------------------------------
# Scripted peer
# ---------------------------------------------------------------------------

class ScriptedPeer:
    """Raw-frame peer for driving a Session through exact sequences."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.sock.settimeout(5)
        self.frames: list[Frame] = []

    def send(self, command: Command, text: str = "") -> None:
        write_frame(self.sock, encode_command(command, text))

    def send_data(self, data: bytes) -> None:
        write_frame(self.sock, encode_data(data))

    def expect(self, *commands: Command) -> Frame:
        """Read until one of *commands* arrives; returns that frame."""
        while True:
            frame = read_frame(self.sock)
            self.frames.append(frame)
            if frame.is_command and frame.command in commands:
                return frame

    def commands(self, command: Command) -> list[str]:
        return [f.text for f in self.frames if f.is_command and f.command == command]

    def close(self) -> None:
        self.sock.close()


@pytest.fixture
def scripted_answer():
    """
    Start an answering Session on one end of a socketpair and hand the
    other end to the test as a ScriptedPeer.
    """
    threads = []

    def start(config: BinkpConfig, **kwargs: Any):
        a, b = socket.socketpair()
        session = Session(b, Role.ANSWERER, config, peer="scripted", **kwargs)
        box: dict[str, Any] = {}

        def worker() -> None:
            box["result"] = session.run()

        t = threading.Thread(target=worker, daemon=True)
        t.start()
        threads.append(t)

        def finish():
            t.join(timeout=15)
            assert not t.is_alive()
            return box["result"]

        return ScriptedPeer(a), session, finish

    yield start
    for t in threads:
        t.join(timeout=15)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakePacketStore:
    def __init__(self, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.parsed: list[str] = []
        self.written: list[tuple[list[dict[str, Any]], str, Path]] = []

    def parse(self, path: Path) -> list[dict[str, Any]]:
        if self.fail_on and self.fail_on in path.name:
            raise ValueError(f"corrupt packet {path.name}")
        self.parsed.append(path.name)
        return [{"id": 1}, {"id": 2}]

    def write(self, messages: list[dict[str, Any]], dest_address: str,
              path: Path | None = None) -> Path:
        assert path is not None
        zone, rest = dest_address.split(":")
        net, node = rest.split("/")
        header = build_packet_header((1, 153, 150), (int(zone), int(net), int(node)))
        path.write_bytes(header + json.dumps(messages).encode("utf-8"))
        self.written.append((messages, dest_address, path))
        return path


class FakeNetmailStore:
    def __init__(self, messages: dict[int, dict[str, Any]] | None = None) -> None:
        self.messages = messages or {}
        self.sent: list[int] = []

    def get_netmail(self, netmail_id: int) -> dict[str, Any] | None:
        return self.messages.get(netmail_id)

    def mark_sent(self, netmail_id: int) -> None:
        self.sent.append(netmail_id)


class FakeNodelist:
    def __init__(self, entries: dict[str, dict[str, Any]] | None = None) -> None:
        self.entries = entries or {}

    def get_crash_route_info(self, address: str) -> dict[str, Any] | None:
        return self.entries.get(address)


@pytest.fixture
def packet_store() -> FakePacketStore:
    return FakePacketStore()
