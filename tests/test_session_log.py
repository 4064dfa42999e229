from __future__ import annotations

import time
from pathlib import Path

import pytest

from binkp.errors import ErrorKind
from binkp.session import ReceivedFile, Role, SessionResult
from binkp.session_log import SqliteSessionLog, record_session


@pytest.fixture
def slog(tmp_path):
    log = SqliteSessionLog(tmp_path / "db" / "binkp.sqlite3")
    yield log
    log.close()


def test_session_lifecycle(slog):
    sid = slog.start("1:153/149", "192.0.2.7", "secure", True)
    slog.update(sid, files_received=2, bytes_received=4096, auth_method="plaintext")
    slog.end(sid, "success")
    row = slog.recent_sessions()[0]
    assert row["id"] == sid
    assert row["status"] == "success"
    assert row["is_inbound"] == 1
    assert row["files_received"] == 2
    assert row["bytes_received"] == 4096
    assert row["auth_method"] == "plaintext"
    assert row["ended_at"] >= row["started_at"]


def test_update_rejects_unknown_fields(slog):
    sid = slog.start(None, None, "secure", False)
    with pytest.raises(ValueError):
        slog.update(sid, status="hacked")


def test_record_session_stores_files(slog):
    result = SessionResult(
        success=False,
        role=Role.ANSWERER,
        remote_address="1:153/150",
        remote_ip="127.0.0.1",
        files_received=["a.pkt"],
        received=[ReceivedFile("a.pkt", Path("/tmp/a.pkt"), 10, "ab" * 32)],
        auth_method="cram-md5",
        bytes_received=10,
        error="Read timed out",
        error_kind=ErrorKind.TRANSPORT,
    )
    sid = record_session(slog, result)
    row = slog.recent_sessions(1)[0]
    assert row["status"] == "failed"
    assert row["error_message"] == "Read timed out"
    assert row["auth_method"] == "cram-md5"
    assert row["remote_ip"] == "127.0.0.1"
    assert slog.session_files(sid) == [{"filename": "a.pkt", "size": 10, "digest": "ab" * 32}]


def test_count_recent_insecure(slog):
    slog.start("1:99/99", None, "insecure", True)
    slog.start("1:99/99", None, "insecure", True)
    slog.start("1:99/99", None, "secure", True)
    slog.start("1:99/98", None, "insecure", True)
    assert slog.count_recent_insecure("1:99/99") == 2
    assert slog.count_recent_insecure("1:99/97") == 0


def test_cleanup_drops_old_rows(slog, monkeypatch):
    real = time.time()
    monkeypatch.setattr(time, "time", lambda: real - 40 * 86400)
    old = slog.start("1:1/1", None, "secure", False)
    slog.add_file(old, "x.pkt", 1, None)
    monkeypatch.setattr(time, "time", lambda: real)
    slog.start("1:1/2", None, "secure", False)
    assert slog.cleanup(30) == 1
    assert [r["remote_address"] for r in slog.recent_sessions()] == ["1:1/2"]
    assert slog.session_files(old) == []
