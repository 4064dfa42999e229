from __future__ import annotations

import json
import os
import time

import pytest

from binkp.errors import ConfigError
from binkp.inbound import InboundQueue, safe_name, unique_path

from conftest import FakePacketStore


@pytest.fixture
def queue(originator_config, packet_store):
    return InboundQueue(originator_config, packet_store)


def _drop(queue, name, data=b"packet"):
    path = queue.path / name
    path.write_bytes(data)
    return path


@pytest.mark.parametrize("raw, expected", [
    ("test.pkt", "test.pkt"),
    ("../../etc/passwd", "passwd"),
    ("C:\\fido\\out\\0001.pkt", "0001.pkt"),
    ("/abs/name.pkt", "name.pkt"),
    ("..", None),
    (".", None),
    ("", None),
])
def test_safe_name(raw, expected):
    assert safe_name(raw) == expected


def test_unique_path_adds_counter(tmp_path):
    (tmp_path / "a.pkt").write_bytes(b"")
    (tmp_path / "a.1.pkt").write_bytes(b"")
    assert unique_path(tmp_path, "a.pkt").name == "a.2.pkt"
    assert unique_path(tmp_path, "b.pkt").name == "b.pkt"
    (tmp_path / "noext").write_bytes(b"")
    assert unique_path(tmp_path, "noext").name == "noext.1"


def test_process_success_deletes_source(queue, packet_store):
    _drop(queue, "0001.pkt")
    _drop(queue, "0002.pkt")
    results = queue.process()
    assert [r.filename for r in results] == ["0001.pkt", "0002.pkt"]
    assert all(r.success and r.messages == 2 for r in results)
    assert packet_store.parsed == ["0001.pkt", "0002.pkt"]
    assert queue.pending_files() == []
    assert not any(queue.processing_dir.iterdir())


def test_failure_moves_to_error_and_batch_continues(originator_config):
    queue = InboundQueue(originator_config, FakePacketStore(fail_on="bad"))
    _drop(queue, "bad.pkt")
    _drop(queue, "good.pkt")
    results = {r.filename: r for r in queue.process()}
    assert not results["bad.pkt"].success
    assert "corrupt" in results["bad.pkt"].error
    assert results["good.pkt"].success
    errors = queue.error_files()
    assert len(errors) == 1
    assert errors[0]["filename"].startswith("bad.pkt.")
    assert errors[0]["filename"].rsplit(".", 1)[1].isdigit()


def test_retry_moves_error_file_back(originator_config, packet_store):
    failing = InboundQueue(originator_config, FakePacketStore(fail_on="x"))
    _drop(failing, "x1.pkt")
    failing.process()
    error_name = failing.error_files()[0]["filename"]

    queue = InboundQueue(originator_config, packet_store)
    result = queue.retry(error_name)
    assert result.success
    assert result.filename == "x1.pkt"
    assert queue.error_files() == []


def test_retry_unknown_file(queue):
    with pytest.raises(FileNotFoundError):
        queue.retry("missing.pkt.123")


def test_process_file_single(queue, packet_store):
    _drop(queue, "one.pkt")
    _drop(queue, "two.pkt")
    assert queue.process_file("two.pkt").success
    assert packet_store.parsed == ["two.pkt"]
    with pytest.raises(FileNotFoundError):
        queue.process_file("two.pkt")


def test_process_without_store_keeps_file(originator_config):
    queue = InboundQueue(originator_config)
    _drop(queue, "keep.pkt")
    with pytest.raises(ConfigError):
        queue.process()
    assert (queue.path / "keep.pkt").exists()


def test_cleanup_removes_only_old_error_files(queue):
    queue.error_dir.mkdir()
    old = queue.error_dir / "old.pkt.1"
    new = queue.error_dir / "new.pkt.2"
    old.write_bytes(b"")
    new.write_bytes(b"")
    past = time.time() - 48 * 3600
    os.utime(old, (past, past))
    assert queue.cleanup(24) == ["old.pkt.1"]
    assert new.exists()


def test_partial_staging_and_finalize(queue):
    fh = queue.open_partial("in.pkt", "s1")
    fh.write(b"abc")
    fh.close()
    assert queue.part_path("in.pkt", "s1").exists()
    assert queue.stats()["partial_files"] == 1
    assert queue.pending_files() == []

    final = queue.finalize("in.pkt", "s1", 1700000000, {"insecure_session": True})
    assert final.name == "in.pkt"
    assert final.read_bytes() == b"abc"
    assert int(final.stat().st_mtime) == 1700000000
    meta = json.loads((queue.path / "in.pkt.meta").read_text())
    assert meta["insecure_session"] is True
    assert not queue.stage_dir("s1").exists()
    assert queue.stats()["partial_files"] == 0


def test_finalize_avoids_overwrite(queue):
    _drop(queue, "dup.pkt", b"first")
    with queue.open_partial("dup.pkt", "s1") as fh:
        fh.write(b"second")
    final = queue.finalize("dup.pkt", "s1")
    assert final.name == "dup.1.pkt"
    assert (queue.path / "dup.pkt").read_bytes() == b"first"


def test_sessions_receiving_same_name_do_not_collide(queue):
    a = queue.open_partial("0001.pkt", "a")
    a.write(b"a" * 50)
    with queue.open_partial("0001.pkt", "b") as b:
        b.write(b"b" * 10)
    first = queue.finalize("0001.pkt", "b")
    a.write(b"a" * 50)
    a.close()
    second = queue.finalize("0001.pkt", "a")

    assert first.read_bytes() == b"b" * 10
    assert second.read_bytes() == b"a" * 100
    assert {first.name, second.name} == {"0001.pkt", "0001.1.pkt"}
    assert queue.stats()["partial_files"] == 0


def test_discard_only_touches_own_session(queue):
    with queue.open_partial("x.pkt", "a") as fh:
        fh.write(b"a")
    with queue.open_partial("x.pkt", "b") as fh:
        fh.write(b"b")
    assert queue.discard_partial("x.pkt", "a")
    assert not queue.discard_partial("x.pkt", "a")
    assert queue.part_path("x.pkt", "b").read_bytes() == b"b"


def test_resume_requires_enough_partial_data(queue):
    assert queue.open_partial("big.pkt", "s1", 512) is None
    (queue.path / "big.pkt.part").write_bytes(b"x" * 600)
    with queue.open_partial("big.pkt", "s1", 512) as fh:
        fh.write(b"y" * 10)
    assert queue.part_path("big.pkt", "s1").read_bytes() == b"x" * 512 + b"y" * 10
    assert not (queue.path / "big.pkt.part").exists()

    (queue.path / "small.pkt.part").write_bytes(b"x" * 100)
    assert queue.open_partial("small.pkt", "s2", 512) is None
    assert (queue.path / "small.pkt.part").exists()


def test_leftover_partial_is_adopted_by_one_session(queue):
    (queue.path / "r.pkt.part").write_bytes(b"x" * 64)
    with queue.open_partial("r.pkt", "a", 64) as fh:
        fh.write(b"y")
    assert queue.open_partial("r.pkt", "b", 64) is None


def test_cleanup_removes_abandoned_partials(queue):
    with queue.open_partial("gone.pkt", "dead") as fh:
        fh.write(b"z")
    part = queue.part_path("gone.pkt", "dead")
    past = time.time() - 48 * 3600
    os.utime(part, (past, past))
    assert queue.cleanup(24) == ["gone.pkt"]
    assert not queue.stage_dir("dead").exists()


def test_meta_follows_packet_through_processing(queue, packet_store):
    _drop(queue, "m.pkt")
    (queue.path / "m.pkt.meta").write_text("{}")
    queue.process()
    assert not (queue.path / "m.pkt.meta").exists()
    assert not (queue.processing_dir / "m.pkt.meta").exists()
