from __future__ import annotations

import enum
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Optional, Set, Tuple

from .constants import DEFAULT_TIMEOUT_MS, FIN_ATTEMPTS, MSS, POLL_INTERVAL_S, SEQ_MODULUS
from .errors import HandshakeError, TransportError
from .eventlog import Clock, EventLog, SenderStats
from .net import LossSimulator, UdpEndpoint
from .packet import Segment, SegmentType
from .seqspace import advance, distance, is_ahead

logger = logging.getLogger(__name__)

FAST_RETRANSMIT_DUPS = 3


class SenderState(enum.Enum):
    CLOSED = "CLOSED"
    SYN_SENT = "SYN_SENT"
    ESTABLISHED = "ESTABLISHED"
    FIN_WAIT = "FIN_WAIT"


class AckTracker:
    """Acknowledgment state written by the listener and awaited by the sender.

    The listener thread is the only caller of :meth:`observe`; the main loop
    blocks in :meth:`wait_for` until a qualifying ACK arrives or its deadline
    passes.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._cond = threading.Condition()
        self._clock = clock
        self._last: int | None = None
        self._dups = 0
        self._data_ends: Set[int] = set()
        self._failed = False

    @property
    def last(self) -> int | None:
        with self._cond:
            return self._last

    @property
    def dup_count(self) -> int:
        with self._cond:
            return self._dups

    def expect(self, end_seq: int) -> None:
        with self._cond:
            self._data_ends.add(end_seq)

    def observe(self, ack: int) -> Tuple[bool, int]:
        """Record an ACK; return (advanced, newly acknowledged data bytes)."""
        with self._cond:
            advanced = False
            acked = 0
            if self._last is None:
                self._last = ack
                advanced = True
            elif ack == self._last:
                self._dups += 1
            elif is_ahead(self._last, ack):
                if ack in self._data_ends:
                    acked = distance(self._last, ack)
                self._last = ack
                self._dups = 0
                advanced = True
            self._cond.notify_all()
            return advanced, acked

    def fail(self) -> None:
        with self._cond:
            self._failed = True
            self._cond.notify_all()

    def _satisfied(self, target: int) -> bool:
        if self._failed:
            return True
        if self._last is None:
            return False
        if self._dups >= FAST_RETRANSMIT_DUPS:
            return True
        return self._last == target or is_ahead(target, self._last)

    def wait_for(self, target: int, since: float, timeout_s: float) -> int | None:
        """Block until the ACK reaches ``target``, a triple duplicate, or the timer ends."""
        deadline = since + timeout_s
        with self._cond:
            while not self._satisfied(target):
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            if self._dups >= FAST_RETRANSMIT_DUPS:
                logger.debug("triple duplicate ACK %s; fast retransmit", self._last)
                self._dups = 0
            return self._last


class AckListener(threading.Thread):
    def __init__(
        self,
        udp: UdpEndpoint,
        tracker: AckTracker,
        loss: LossSimulator,
        log: EventLog,
        stats: SenderStats,
    ):
        super().__init__(name="ack-listener", daemon=True)
        self.udp = udp
        self.tracker = tracker
        self.loss = loss
        self.log = log
        self.stats = stats
        self.running = threading.Event()
        self.running.set()
        self.error: OSError | None = None

    def stop(self) -> None:
        self.running.clear()

    def run(self) -> None:
        while self.running.is_set():
            try:
                raw, _ = self.udp.recvfrom()
            except TimeoutError:
                continue
            except OSError as exc:
                if not self.running.is_set():
                    return
                logger.error("ack listener receive failed: %s", exc)
                self.error = exc
                self.tracker.fail()
                return

            try:
                segment = Segment.from_bytes(raw)
            except ValueError as exc:
                logger.debug("discarding malformed datagram: %s", exc)
                continue

            if segment.kind != SegmentType.ACK:
                logger.debug("ignoring inbound %s seq=%d", segment.kind.name, segment.seq)
                continue

            if self.loss.drop_reverse():
                self.stats.ack_segments_dropped += 1
                self.log.dropped(segment)
                continue

            self.log.received(segment)
            advanced, acked = self.tracker.observe(segment.seq)
            if advanced:
                self.stats.original_data_acked += acked
            else:
                self.stats.dup_acks_received += 1


@dataclass(slots=True)
class Sender:
    udp: UdpEndpoint
    f: BinaryIO
    max_window: int = MSS
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    loss: LossSimulator = field(default_factory=LossSimulator)
    log: EventLog = field(default_factory=EventLog)
    isn: int | None = None
    max_handshake_attempts: int = 0
    fin_attempts: int = FIN_ATTEMPTS
    clock: Clock = time.monotonic

    state: SenderState = field(default=SenderState.CLOSED, init=False)
    seq: int = field(default=0, init=False)
    data: bytes = field(default=b"", init=False)
    stats: SenderStats = field(default_factory=SenderStats, init=False)
    tracker: AckTracker = field(init=False)
    listener: Optional[AckListener] = field(default=None, init=False)
    # segment end sequence -> file offset of that end
    index: Dict[int, int] = field(default_factory=dict, init=False)
    _highest: Tuple[int, int] = field(default=(0, 0), init=False)
    _sent_offsets: Set[int] = field(default_factory=set, init=False)

    def __post_init__(self) -> None:
        self.tracker = AckTracker(self.clock)

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    def run(self) -> SenderStats:
        self.data = self.f.read()
        self.udp.settimeout(POLL_INTERVAL_S)
        self.listener = AckListener(self.udp, self.tracker, self.loss, self.log, self.stats)
        self.listener.start()

        try:
            self._handshake()
            self._transmit()
            self._teardown()
        finally:
            self._release()

        self.log.write_summary(self.stats.summary_lines())
        return self.stats

    def _handshake(self) -> None:
        isn = self.isn if self.isn is not None else random.randrange(SEQ_MODULUS)
        target = advance(isn, 1)
        self.state = SenderState.SYN_SENT
        self.seq = isn
        self.log.start()
        logger.info("starting connection; isn=%d", isn)

        attempts = 0
        while True:
            attempts += 1
            started = self.clock()
            self._emit(Segment.syn(isn))
            if self._wait(target, started) == target:
                break
            if self.max_handshake_attempts and attempts >= self.max_handshake_attempts:
                raise HandshakeError(f"no ACK for SYN after {attempts} attempts")
            logger.debug("SYN timeout; attempt=%d", attempts)

        self.seq = target
        self.state = SenderState.ESTABLISHED
        logger.info("connection established after %d SYN attempt(s)", attempts)

    def _transmit(self) -> None:
        total = len(self.data)
        offset = 0
        self.index[self.seq] = 0
        self._highest = (self.seq, 0)
        logger.info("sending %d bytes; window=%d timer=%dms", total, self.max_window, self.timeout_ms)

        while offset < total:
            budget = 0
            started: float | None = None
            while budget < self.max_window and offset < total:
                if started is None:
                    started = self.clock()
                size = min(MSS, self.max_window - budget, total - offset)
                segment = Segment.data(self.seq, self.data[offset : offset + size])
                self._send_data(segment, offset)
                self.seq = segment.end_seq
                offset += size
                budget += size
                self.index[self.seq] = offset
                if offset > self._highest[1]:
                    self._highest = (self.seq, offset)

            assert started is not None
            ack = self._wait(self.seq, started)
            if ack is None or ack == self.seq:
                continue

            if is_ahead(self.seq, ack):
                logger.debug("ACK %d ahead of cursor %d; advancing", ack, self.seq)
            elif is_ahead(ack, self.seq):
                logger.debug("ACK %d behind cursor %d; going back", ack, self.seq)
            else:
                continue
            offset = self._resolve(ack)
            self.seq = ack

        logger.info("all data acknowledged")

    def _resolve(self, ack: int) -> int:
        """File offset corresponding to an acknowledged sequence number."""
        offset = self.index.get(ack)
        if offset is None:
            high_seq, high_offset = self._highest
            offset = high_offset - distance(ack, high_seq)
            logger.debug("no record for ACK %d; derived offset %d", ack, offset)
        return max(0, min(offset, len(self.data)))

    def _teardown(self) -> None:
        self.state = SenderState.FIN_WAIT
        fin = Segment.fin(self.seq)
        target = advance(self.seq, 1)

        for attempt in range(1, self.fin_attempts + 1):
            started = self.clock()
            self._emit(fin)
            if self._wait(target, started) == target:
                logger.info("FIN acknowledged; closing")
                break
            logger.debug("FIN timeout; attempt=%d", attempt)
        else:
            logger.warning("no ACK for FIN after %d attempts; closing anyway", self.fin_attempts)

        self.state = SenderState.CLOSED

    def _wait(self, target: int, since: float) -> int | None:
        ack = self.tracker.wait_for(target, since, self.timeout_s)
        if self.listener is not None and self.listener.error is not None:
            raise TransportError(f"ack listener failed: {self.listener.error}") from self.listener.error
        return ack

    def _send_data(self, segment: Segment, offset: int) -> None:
        self.tracker.expect(segment.end_seq)
        if not self._emit(segment):
            self.stats.data_segments_dropped += 1
            return

        if offset in self._sent_offsets:
            self.stats.retransmitted_segments += 1
        else:
            self._sent_offsets.add(offset)
            self.stats.original_data_sent += len(segment.payload)
            self.stats.original_segments_sent += 1

    def _emit(self, segment: Segment) -> bool:
        """Send ``segment`` unless the loss simulator drops it."""
        if self.loss.drop_forward():
            self.log.dropped(segment)
            return False
        self.log.sent(segment)
        try:
            self.udp.send(segment.to_bytes())
        except OSError as exc:
            raise TransportError(f"send failed: {exc}") from exc
        return True

    def _release(self) -> None:
        if self.listener is not None:
            self.listener.stop()
        self.udp.close()
        if self.listener is not None:
            self.listener.join(timeout=1.0)
