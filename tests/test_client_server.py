from __future__ import annotations

import socket
import threading
from types import SimpleNamespace

import pytest

from binkp.client import Client
from binkp.config import Uplink
from binkp.errors import ConfigError, ErrorKind
from binkp.protocol import Command, read_frame
from binkp.server import BUSY_MESSAGE, Server
from binkp.session_log import SqliteSessionLog

from conftest import NODE_A, NODE_B, write_packet


@pytest.fixture
def running(answerer_config, originator_config):
    results = []
    done = threading.Event()

    def on_session(result):
        results.append(result)
        done.set()

    slog = SqliteSessionLog(answerer_config.database_path)
    server = Server(answerer_config, session_log=slog, on_session=on_session)
    server.start()
    originator_config.uplinks[0].port = server.address[1]
    yield SimpleNamespace(server=server, results=results, done=done, slog=slog)
    server.stop()
    slog.close()


def _refuse(address, timeout=None):
    raise ConnectionRefusedError(111, "Connection refused")


def _closed_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def test_server_address_requires_start(answerer_config):
    with pytest.raises(RuntimeError):
        Server(answerer_config).address


def test_poll_delivers_queued_packet(running, originator_config, answerer_config):
    write_packet(originator_config.outbound_path, "test.pkt", 2048)
    client_log = SqliteSessionLog(originator_config.database_path)
    client = Client(originator_config, session_log=client_log)

    result = client.poll_uplink(NODE_B)
    assert result.success
    assert result.files_sent == ["test.pkt"]
    assert result.remote_address == NODE_B

    assert running.done.wait(10)
    inbound = running.results[0]
    assert inbound.success
    assert inbound.remote_address == NODE_A
    assert inbound.files_received == ["test.pkt"]
    assert (answerer_config.inbound_path / "test.pkt").stat().st_size == 2048

    row = client_log.recent_sessions(1)[0]
    assert row["status"] == "success"
    assert row["is_inbound"] == 0
    assert row["files_sent"] == 1
    client_log.close()


def test_server_records_inbound_sessions(running, originator_config):
    write_packet(originator_config.outbound_path, "logged.pkt", 300)
    Client(originator_config).poll_uplink(NODE_B)
    assert running.done.wait(10)
    server_row = running.slog.recent_sessions(1)[0]
    assert server_row["is_inbound"] == 1
    assert server_row["remote_address"] == NODE_A
    files = running.slog.session_files(server_row["id"])
    assert [f["filename"] for f in files] == ["logged.pkt"]
    assert len(files[0]["digest"]) == 64


def test_busy_server_sends_bsy(answerer_config):
    answerer_config.max_connections = 0
    server = Server(answerer_config)
    server.start()
    try:
        sock = socket.create_connection(server.address, timeout=5)
        frame = read_frame(sock)
        assert frame.command == Command.M_BSY
        assert frame.text == BUSY_MESSAGE
        sock.close()
        assert server.get_connection_count() == 0
    finally:
        server.stop()


def test_connection_probe(running, originator_config):
    client = Client(originator_config)
    ok = client.test_connection("127.0.0.1", running.server.address[1], timeout=2)
    assert ok.success
    assert ok.connect_time >= 0
    down = client.test_connection("127.0.0.1", _closed_port(), timeout=2)
    assert not down.success
    assert down.error


def test_refused_connection_is_a_transport_result(originator_config):
    slog = SqliteSessionLog(originator_config.database_path)
    client = Client(originator_config, session_log=slog, connector=_refuse)
    result = client.poll_uplink(NODE_B)
    assert not result.success
    assert result.error_kind is ErrorKind.TRANSPORT
    assert result.remote_address == NODE_B
    assert "Connection refused" in result.error
    assert slog.recent_sessions(1)[0]["status"] == "failed"
    slog.close()


def test_poll_all_isolates_failures(running, originator_config):
    originator_config.uplinks.append(
        Uplink(address="2:5030/1", hostname="down.invalid", networks=["2:*/*"], me="2:5030/999"))
    originator_config.uplinks.append(
        Uplink(address="3:1/1", hostname="off.invalid", enabled=False))

    def connector(address, timeout=None):
        if address[0] == "down.invalid":
            _refuse(address, timeout)
        return socket.create_connection(address, timeout=timeout)

    results = Client(originator_config, connector=connector).poll_all_uplinks()
    assert set(results) == {NODE_B, "2:5030/1"}
    assert results[NODE_B].success
    assert results["2:5030/1"].error_kind is ErrorKind.TRANSPORT


def test_poll_all_queued_only_skips_idle_uplinks(originator_config):
    client = Client(originator_config, connector=_refuse)
    assert client.poll_all_uplinks(queued_only=True) == {}
    write_packet(originator_config.outbound_path, "q.pkt")
    results = client.poll_all_uplinks(queued_only=True)
    assert list(results) == [NODE_B]
    assert (originator_config.outbound_path / "q.pkt").exists()


def test_unknown_or_disabled_uplink(originator_config):
    client = Client(originator_config, connector=_refuse)
    with pytest.raises(ConfigError):
        client.poll_uplink("9:9/9")
    with pytest.raises(ConfigError):
        client.connect("9:9/9")
    originator_config.uplinks[0].enabled = False
    with pytest.raises(ConfigError):
        client.poll_uplink(NODE_B)


def test_send_file_queues_and_polls(running, originator_config, answerer_config, tmp_path):
    src = write_packet(tmp_path, "direct.pkt", 500)
    result = Client(originator_config).send_file(NODE_B, src)
    assert result.success
    assert result.files_sent == ["direct.pkt"]
    assert src.exists()
    assert running.done.wait(10)
    assert (answerer_config.inbound_path / "direct.pkt").exists()


def test_send_missing_file(originator_config, tmp_path):
    with pytest.raises(FileNotFoundError):
        Client(originator_config).send_file(NODE_B, tmp_path / "nope.pkt")


def test_uplink_status(originator_config):
    status = Client(originator_config, connector=_refuse).uplink_status(timeout=1)
    uplink, probe = status[NODE_B]
    assert uplink is originator_config.uplinks[0]
    assert not probe.success
