from __future__ import annotations

import os
import time

import pytest

from binkp.config import BinkpConfig, Uplink
from binkp.outbound import OutboundFile, OutboundQueue, chunk_file, match_name

from conftest import write_packet


@pytest.fixture
def two_networks(tmp_path):
    cfg = BinkpConfig(
        outbound_path=tmp_path / "outbound",
        inbound_path=tmp_path / "inbound",
        uplinks=[
            Uplink(address="1:153/149", networks=["1:153/*"], me="1:153/150"),
            Uplink(address="2:5030/1", networks=["2:5030/*"], me="2:5030/999"),
        ],
    )
    cfg.ensure_directories()
    return cfg


def test_routing_filter_keeps_packets_on_their_network(two_networks):
    queue = OutboundQueue(two_networks)
    write_packet(queue.path, "fido.pkt", dest=(1, 153, 149))
    write_packet(queue.path, "other.pkt", dest=(2, 5030, 1000))
    a, b = two_networks.uplinks
    assert [p.name for p in queue.batch_for(a)] == ["fido.pkt"]
    assert [p.name for p in queue.batch_for(b)] == ["other.pkt"]
    assert len(queue.batch_for(None)) == 2


def test_unreadable_header_is_never_sent(two_networks):
    queue = OutboundQueue(two_networks)
    (queue.path / "short.pkt").write_bytes(b"too short")
    assert queue.batch_for(two_networks.uplinks[0]) == []
    assert queue.packet_info(queue.path / "short.pkt")["dest_address"] is None


def test_claim_moves_files_out_of_queue(two_networks):
    queue = OutboundQueue(two_networks)
    write_packet(queue.path, "fido.pkt", dest=(1, 153, 149))
    claim = queue.claim("s1", two_networks.uplinks[0])
    assert claim.pending == ["fido.pkt"]
    assert queue.list_packets() == []
    # a second session finds nothing left to claim
    assert queue.claim("s2", two_networks.uplinks[0]).pending == []
    assert queue.stats()["claimed_files"] == 1


def test_confirm_deletes_and_release_restores(two_networks):
    queue = OutboundQueue(two_networks)
    write_packet(queue.path, "a.pkt")
    write_packet(queue.path, "b.pkt")
    claim = queue.claim("s1")
    assert claim.confirm("a.pkt") == "a.pkt"
    assert claim.confirm("a.pkt") is None
    assert claim.release_all() == ["b.pkt"]
    assert [p.name for p in queue.list_packets()] == ["b.pkt"]
    assert not claim.directory.exists()


def test_confirm_matches_by_base_name(two_networks):
    queue = OutboundQueue(two_networks)
    write_packet(queue.path, "c.pkt")
    claim = queue.claim("s1")
    assert claim.confirm("/some/remote/path/c.pkt") == "c.pkt"


def test_recover_stale_claims(two_networks):
    queue = OutboundQueue(two_networks)
    write_packet(queue.path, "lost.pkt")
    claim = queue.claim("crashed")
    past = time.time() - 7200
    os.utime(claim.directory, (past, past))
    assert queue.recover_stale(max_age=3600) == 1
    assert [p.name for p in queue.list_packets()] == ["lost.pkt"]
    assert not claim.directory.exists()


def test_recent_claims_are_left_alone(two_networks):
    queue = OutboundQueue(two_networks)
    write_packet(queue.path, "busy.pkt")
    queue.claim("running")
    assert queue.recover_stale(max_age=3600) == 0


def test_add_copies_with_unique_name(two_networks, tmp_path):
    queue = OutboundQueue(two_networks)
    src = write_packet(tmp_path, "new.pkt")
    assert queue.add(src).name == "new.pkt"
    assert queue.add(src).name == "new.1.pkt"
    assert src.exists()


def test_delete_and_cleanup(two_networks):
    queue = OutboundQueue(two_networks)
    write_packet(queue.path, "old.pkt", mtime=int(time.time()) - 72 * 3600)
    write_packet(queue.path, "fresh.pkt")
    assert queue.cleanup(48) == ["old.pkt"]
    queue.delete("fresh.pkt")
    assert queue.list_packets() == []
    with pytest.raises(FileNotFoundError):
        queue.delete("fresh.pkt")


def test_packet_info(two_networks):
    queue = OutboundQueue(two_networks)
    path = write_packet(queue.path, "i.pkt", size=100, dest=(2, 5030, 1000), mtime=1700000000)
    info = queue.packet_info(path)
    assert info == {
        "filename": "i.pkt",
        "size": 100,
        "modified": 1700000000,
        "orig_address": "1:153/150",
        "dest_address": "2:5030/1000",
    }


def test_file_line_and_chunks(tmp_path):
    path = tmp_path / "x.pkt"
    path.write_bytes(b"a" * 20)
    os.utime(path, (1700000000, 1700000000))
    entry = OutboundFile.from_path(path)
    assert entry.file_line() == "x.pkt 20 1700000000 0"
    assert entry.file_line(8) == "x.pkt 20 1700000000 8"
    assert [len(b) for b in chunk_file(path, 8)] == [8, 8, 4]
    empty = tmp_path / "empty.pkt"
    empty.write_bytes(b"")
    assert list(chunk_file(empty)) == []


def test_match_name():
    assert match_name("a.pkt", ["a.pkt", "b.pkt"]) == "a.pkt"
    assert match_name("dir\\b.pkt", ["a.pkt", "b.pkt"]) == "b.pkt"
    assert match_name("c.pkt", ["a.pkt"]) is None
