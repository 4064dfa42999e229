from __future__ import annotations

import socket
import struct

import pytest

from binkp.errors import ConnectionClosed, FrameTooLarge, ProtocolError
from binkp.protocol import (
    COMMAND_FLAG,
    MAX_FRAME_SIZE,
    Command,
    decode_frame,
    encode_command,
    encode_data,
    read_frame,
    write_frame,
)


def test_command_frame_layout():
    raw = encode_command(Command.M_ADR, "1:153/149@fidonet").to_bytes()
    (header,) = struct.unpack("!H", raw[:2])
    assert header & COMMAND_FLAG
    assert header & 0x7FFF == len("1:153/149@fidonet") + 1
    assert raw[2] == Command.M_ADR
    assert raw[3:] == b"1:153/149@fidonet"


def test_data_frame_layout():
    raw = encode_data(b"\x00\x01\x02").to_bytes()
    assert raw == b"\x00\x03\x00\x01\x02"


@pytest.mark.parametrize("frame", [
    encode_command(Command.M_NUL, "SYS Test BBS"),
    encode_command(Command.M_EOB),
    encode_data(b""),
    encode_data(b"x" * MAX_FRAME_SIZE),
    encode_command(Command.M_FILE, b"y" * (MAX_FRAME_SIZE - 1)),
])
def test_decode_inverts_encode(frame):
    back = decode_frame(frame.to_bytes())
    assert back == frame


def test_oversized_frames_rejected():
    with pytest.raises(FrameTooLarge):
        encode_data(b"x" * (MAX_FRAME_SIZE + 1))
    with pytest.raises(FrameTooLarge):
        encode_command(Command.M_FILE, b"y" * MAX_FRAME_SIZE)


def test_decode_rejects_truncated_input():
    with pytest.raises(ProtocolError):
        decode_frame(b"\x80")
    with pytest.raises(ProtocolError):
        decode_frame(b"\x00\x05abc")
    with pytest.raises(ProtocolError):
        decode_frame(b"\x80\x00")


def test_frame_text_and_name():
    frame = encode_command(Command.M_GOT, "test.pkt 1024 1700000000")
    assert frame.text == "test.pkt 1024 1700000000"
    assert frame.command_name == "M_GOT"
    assert "M_GOT" in str(frame)
    assert decode_frame(b"\x80\x01\x63").command_name == "UNKNOWN(99)"


def test_read_and_write_over_socket():
    a, b = socket.socketpair()
    try:
        write_frame(a, encode_command(Command.M_PWD, "secret"))
        write_frame(a, encode_data(b"payload"))
        first = read_frame(b)
        second = read_frame(b)
        assert first.command == Command.M_PWD and first.text == "secret"
        assert not second.is_command and second.payload == b"payload"
    finally:
        a.close()
        b.close()


def test_non_blocking_read_returns_none_when_idle():
    a, b = socket.socketpair()
    try:
        assert read_frame(b, non_blocking=True) is None
        write_frame(a, encode_command(Command.M_EOB))
        frame = read_frame(b, non_blocking=True)
        assert frame is not None and frame.command == Command.M_EOB
    finally:
        a.close()
        b.close()


def test_read_after_peer_close_raises():
    a, b = socket.socketpair()
    b.settimeout(2)
    a.sendall(b"\x80")          # half a header, then EOF
    a.close()
    try:
        with pytest.raises(ConnectionClosed):
            read_frame(b)
    finally:
        b.close()
