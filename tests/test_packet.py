from __future__ import annotations

import pytest

from stp.packet import Segment, SegmentType


def test_roundtrip_data():
    s = Segment.data(seq=4321, payload=b"hello")
    raw = s.to_bytes()
    p = Segment.from_bytes(raw)
    assert p.kind is SegmentType.DATA
    assert p.seq == 4321
    assert p.payload == b"hello"


def test_header_layout():
    raw = Segment.fin(0xABCD).to_bytes()
    assert raw == b"\x00\x03\xab\xcd"
    assert Segment.make_ack(1).to_bytes() == b"\x00\x01\x00\x01"
    assert Segment.syn(0).to_bytes() == b"\x00\x02\x00\x00"


def test_roundtrip_ack():
    a = Segment.make_ack(7)
    p = Segment.from_bytes(a.to_bytes())
    assert p.kind is SegmentType.ACK
    assert p.seq == 7
    assert p.payload == b""


def test_end_seq_wraps():
    assert Segment.data(65000, b"x" * 1000).end_seq == 464
    assert Segment.data(10, b"").end_seq == 10


def test_too_short():
    with pytest.raises(ValueError):
        Segment.from_bytes(b"\x00\x01\x00")


def test_unknown_type():
    with pytest.raises(ValueError):
        Segment.from_bytes(b"\x00\x09\x00\x01")


def test_payload_on_control_segment():
    with pytest.raises(ValueError):
        Segment.from_bytes(b"\x00\x02\x00\x01extra")


def test_payload_too_large():
    with pytest.raises(ValueError):
        Segment.data(0, b"x" * 1001)
