from __future__ import annotations

import io
import queue
import threading
import time
from typing import Callable

import pytest

from stp.errors import HandshakeError, TransportError
from stp.eventlog import Direction, EventLog
from stp.net import LossSimulator
from stp.packet import Segment, SegmentType
from stp.receiver import Receiver, ReceiverState
from stp.sender import AckTracker, Sender, SenderState


class Link:
    """In-memory path from a Sender to a Receiver state machine."""

    def __init__(
        self,
        receiver: Receiver,
        drop: Callable[[Segment, int], bool] = lambda seg, n: False,
        drop_ack: Callable[[Segment], bool] = lambda seg: False,
    ):
        self.receiver = receiver
        self.drop = drop
        self.drop_ack = drop_ack
        self.acks: queue.Queue[bytes] = queue.Queue()
        self.sent: list[Segment] = []
        self.timeout = 0.1
        self.closed = False

    def settimeout(self, timeout_s):
        self.timeout = timeout_s

    def send(self, data: bytes) -> None:
        seg = Segment.from_bytes(data)
        self.sent.append(seg)
        if self.drop(seg, self.sent.count(seg)):
            return
        reply = self.receiver.handle(seg)
        if reply is not None and not self.drop_ack(reply):
            self.acks.put(reply.to_bytes())

    def recvfrom(self, bufsize: int = 65535):
        if self.closed:
            raise OSError("endpoint closed")
        try:
            return self.acks.get(timeout=self.timeout), ("127.0.0.1", 9)
        except queue.Empty:
            raise TimeoutError from None

    def close(self) -> None:
        self.closed = True

    def data_seqs(self) -> list[int]:
        return [s.seq for s in self.sent if s.kind is SegmentType.DATA]


class BrokenLink(Link):
    def recvfrom(self, bufsize: int = 65535):
        raise OSError("network unreachable")


class Scripted:
    def __init__(self, *values: float, then: float = 0.99):
        self.values = list(values)
        self.then = then

    def random(self) -> float:
        return self.values.pop(0) if self.values else self.then


def make_sender(link: Link, payload: bytes, **kwargs) -> Sender:
    kwargs.setdefault("timeout_ms", 100)
    return Sender(link, io.BytesIO(payload), log=EventLog(), **kwargs)


def new_receiver() -> Receiver:
    return Receiver(None, io.BytesIO(), log=EventLog())


# -- AckTracker -------------------------------------------------------------


def test_tracker_counts_duplicates_and_resets_on_advance():
    t = AckTracker()
    assert t.observe(10) == (True, 0)
    assert t.observe(10) == (False, 0)
    assert t.observe(10) == (False, 0)
    assert t.dup_count == 2
    assert t.observe(20)[0] is True
    assert t.dup_count == 0
    assert t.last == 20


def test_tracker_ignores_stale_ack():
    t = AckTracker()
    t.observe(500)
    assert t.observe(400) == (False, 0)
    assert t.last == 500
    assert t.dup_count == 0


def test_tracker_acked_bytes_across_wrap():
    t = AckTracker()
    t.expect(464)
    t.observe(65000)
    assert t.observe(464) == (True, 1000)


def test_wait_returns_immediately_when_target_reached():
    t = AckTracker()
    t.observe(3000)
    start = time.monotonic()
    assert t.wait_for(2000, start, timeout_s=5.0) == 3000
    assert time.monotonic() - start < 1.0


def test_wait_times_out_with_last_ack():
    t = AckTracker()
    t.observe(1000)
    start = time.monotonic()
    assert t.wait_for(2000, start, timeout_s=0.15) == 1000
    assert time.monotonic() - start >= 0.14


def test_wait_returns_on_triple_duplicate():
    t = AckTracker()
    for _ in range(4):
        t.observe(1000)
    start = time.monotonic()
    assert t.wait_for(5000, start, timeout_s=5.0) == 1000
    assert time.monotonic() - start < 1.0
    assert t.dup_count == 0


def test_wait_wakes_on_listener_update():
    t = AckTracker()
    t.observe(0)
    threading.Timer(0.05, t.observe, args=(4000,)).start()
    start = time.monotonic()
    assert t.wait_for(4000, start, timeout_s=5.0) == 4000
    assert time.monotonic() - start < 2.0


# -- Sender -----------------------------------------------------------------


def test_clean_transfer():
    payload = bytes(range(256)) * 20
    r = new_receiver()
    link = Link(r)
    s = make_sender(link, payload, max_window=2000, isn=100)

    stats = s.run()

    assert r.out.getvalue() == payload
    assert s.state is SenderState.CLOSED
    assert r.state is ReceiverState.CLOSING
    assert stats.original_data_sent == len(payload)
    assert stats.original_segments_sent == 6
    assert stats.original_data_acked == len(payload)
    assert link.sent[0] == Segment.syn(100)
    assert link.sent[-1] == Segment.fin(101 + len(payload))
    assert link.closed


def test_go_back_n_after_lost_segment():
    payload = b"".join(bytes([i]) * 1000 for i in range(5))
    r = new_receiver()
    link = Link(r, drop=lambda seg, n: seg.kind is SegmentType.DATA and seg.seq == 1101 and n == 1)
    s = make_sender(link, payload, max_window=5000, isn=100)

    stats = s.run()

    assert r.out.getvalue() == payload
    assert link.data_seqs() == [101, 1101, 2101, 3101, 4101, 1101, 2101, 3101, 4101]
    assert stats.original_segments_sent == 5
    assert stats.retransmitted_segments == 4
    assert r.stats.dup_data_segments_received == 3


def test_lost_ack_recovered_by_next_cumulative_ack():
    payload = b"q" * 3000
    r = new_receiver()
    link = Link(r, drop_ack=lambda ack: ack.seq == 1101)
    s = make_sender(link, payload, max_window=3000, isn=100)

    stats = s.run()

    assert r.out.getvalue() == payload
    assert stats.retransmitted_segments == 0
    assert link.data_seqs() == [101, 1101, 2101]


def test_sequence_wraparound():
    payload = bytes(range(97)) * 100
    r = new_receiver()
    link = Link(r, drop=lambda seg, n: seg.kind is SegmentType.DATA and seg.seq == 464 and n == 1)
    s = make_sender(link, payload, max_window=4000, isn=63999)

    s.run()

    assert r.out.getvalue() == payload
    assert 464 in link.data_seqs()
    assert s.index[464] == 2000


def test_handshake_retried_after_dropped_syn():
    r = new_receiver()
    link = Link(r)
    loss = LossSimulator(forward=0.5, reverse=0.0, rng=Scripted(0.0))
    s = make_sender(link, b"hello", isn=7, loss=loss, timeout_ms=50)

    s.run()

    assert [(e.direction, e.kind) for e in s.log.entries[:2]] == [
        (Direction.DROPPED, SegmentType.SYN),
        (Direction.SENT, SegmentType.SYN),
    ]
    syns = [e for e in r.log.entries if e.kind is SegmentType.SYN]
    assert len(syns) == 1
    assert r.isn == 7
    assert r.expected == 8 + 5
    assert r.out.getvalue() == b"hello"


def test_forward_drops_are_logged_and_counted():
    r = new_receiver()
    link = Link(r)
    # SYN kept, first DATA dropped, everything after kept
    loss = LossSimulator(forward=0.5, rng=Scripted(0.9, 0.1))
    s = make_sender(link, b"d" * 1000, isn=0, loss=loss, timeout_ms=50)

    stats = s.run()

    assert stats.data_segments_dropped == 1
    assert stats.original_segments_sent == 1
    assert stats.retransmitted_segments == 0
    assert r.out.getvalue() == b"d" * 1000
    dropped = [e for e in s.log.entries if e.direction is Direction.DROPPED]
    assert [(e.kind, e.seq, e.length) for e in dropped] == [(SegmentType.DATA, 1, 1000)]


def test_reverse_drops_counted():
    r = new_receiver()
    link = Link(r)
    # reverse draws only happen in the listener; the first ACK (for SYN) is dropped
    loss = LossSimulator(forward=0.0, reverse=0.5, rng=Scripted(0.0, 0.0))
    s = make_sender(link, b"", isn=0, loss=loss, timeout_ms=50)

    stats = s.run()

    assert stats.ack_segments_dropped >= 1
    assert s.state is SenderState.CLOSED


def test_teardown_gives_up_after_bounded_attempts():
    r = new_receiver()
    link = Link(r, drop=lambda seg, n: seg.kind is SegmentType.FIN)
    s = make_sender(link, b"abc", isn=0, timeout_ms=20, fin_attempts=3)

    s.run()

    assert sum(1 for seg in link.sent if seg.kind is SegmentType.FIN) == 3
    assert s.state is SenderState.CLOSED
    assert r.state is ReceiverState.ESTABLISHED
    assert r.out.getvalue() == b"abc"


def test_handshake_ceiling():
    r = new_receiver()
    link = Link(r, drop=lambda seg, n: True)
    s = make_sender(link, b"abc", isn=0, timeout_ms=20, max_handshake_attempts=2)

    with pytest.raises(HandshakeError):
        s.run()
    assert sum(1 for seg in link.sent if seg.kind is SegmentType.SYN) == 2
    assert link.closed


def test_listener_fault_surfaces_as_transport_error():
    link = BrokenLink(new_receiver())
    s = make_sender(link, b"abc", isn=0, timeout_ms=5000)

    start = time.monotonic()
    with pytest.raises(TransportError):
        s.run()
    assert time.monotonic() - start < 2.0
