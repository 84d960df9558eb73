from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Optional, Set

from .constants import FIN_GRACE_S, POLL_INTERVAL_S
from .errors import TransportError
from .eventlog import Clock, EventLog, ReceiverStats
from .net import UdpEndpoint
from .packet import Segment, SegmentType
from .seqspace import advance, distance, is_ahead

logger = logging.getLogger(__name__)


class ReceiverState(enum.Enum):
    LISTEN = "LISTEN"
    ESTABLISHED = "ESTABLISHED"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


@dataclass(slots=True)
class Receiver:
    udp: Optional[UdpEndpoint]
    out: BinaryIO
    log: EventLog = field(default_factory=EventLog)
    max_window: int = 0
    grace_s: float = FIN_GRACE_S
    clock: Clock = time.monotonic

    state: ReceiverState = field(default=ReceiverState.LISTEN, init=False)
    isn: int | None = field(default=None, init=False)
    expected: int = field(default=0, init=False)
    buffer: Dict[int, bytes] = field(default_factory=dict, init=False)
    # starts seen beyond the window bound and not buffered
    discarded: Set[int] = field(default_factory=set, init=False)
    stats: ReceiverStats = field(default_factory=ReceiverStats, init=False)
    closing_since: float | None = field(default=None, init=False)
    _last_ack: int | None = field(default=None, init=False)

    def handle(self, segment: Segment, now: float | None = None) -> Optional[Segment]:
        """Advance the state machine; return the ACK to send back, if any."""
        if now is None:
            now = self.clock()
        self.expire(now)

        if segment.kind == SegmentType.SYN:
            return self._on_syn(segment)
        if segment.kind == SegmentType.DATA:
            return self._on_data(segment)
        if segment.kind == SegmentType.FIN:
            return self._on_fin(segment, now)

        logger.debug("ignoring %s seq=%d in %s", segment.kind.name, segment.seq, self.state.value)
        return None

    def expire(self, now: float) -> bool:
        """Close once the FIN grace interval has elapsed."""
        if self.state is ReceiverState.CLOSING and self.closing_since is not None:
            if now - self.closing_since >= self.grace_s:
                self.state = ReceiverState.CLOSED
                logger.info("grace period over; connection closed")
        return self.state is ReceiverState.CLOSED

    def _on_syn(self, segment: Segment) -> Optional[Segment]:
        if self.state is ReceiverState.LISTEN:
            self.log.start()
            self.log.received(segment)
            self.isn = segment.seq
            self.expected = advance(segment.seq, 1)
            self.state = ReceiverState.ESTABLISHED
            logger.info("SYN received; isn=%d, connection established", segment.seq)
            return self._ack(self.expected)

        if self.state is ReceiverState.ESTABLISHED and segment.seq == self.isn:
            self.log.received(segment)
            logger.debug("duplicate SYN; re-ack %d", advance(segment.seq, 1))
            return self._ack(advance(segment.seq, 1))

        logger.debug("ignoring SYN seq=%d in %s", segment.seq, self.state.value)
        return None

    def _on_data(self, segment: Segment) -> Optional[Segment]:
        if self.state is not ReceiverState.ESTABLISHED:
            logger.debug("ignoring DATA seq=%d in %s", segment.seq, self.state.value)
            return None

        self.log.received(segment)
        if self._already_received(segment.seq):
            self.stats.dup_data_segments_received += 1
        else:
            self.stats.original_data_received += len(segment.payload)
            self.stats.original_segments_received += 1

        if segment.seq == self.expected:
            self._deliver(segment.payload)
            self._flush_buffer()
        elif self._acceptable(segment.seq):
            self.buffer[segment.seq] = segment.payload
        else:
            logger.debug("discarding DATA seq=%d; expected=%d", segment.seq, self.expected)
            if is_ahead(self.expected, segment.seq):
                self.discarded.add(segment.seq)

        return self._ack(self.expected)

    def _on_fin(self, segment: Segment, now: float) -> Optional[Segment]:
        if self.state is ReceiverState.ESTABLISHED:
            self.log.received(segment)
            self.state = ReceiverState.CLOSING
            self.closing_since = now
            logger.info("FIN received; seq=%d, holding for %.1fs", segment.seq, self.grace_s)
            return self._ack(advance(segment.seq, 1))

        if self.state is ReceiverState.CLOSING:
            self.log.received(segment)
            return self._ack(advance(segment.seq, 1))

        logger.debug("ignoring FIN seq=%d in %s", segment.seq, self.state.value)
        return None

    def _already_received(self, seq: int) -> bool:
        # everything behind the cursor was delivered; buffered keys are held
        if seq in self.buffer or seq in self.discarded:
            return True
        return seq != self.expected and not is_ahead(self.expected, seq)

    def _acceptable(self, seq: int) -> bool:
        if not is_ahead(self.expected, seq):
            return False
        return self.max_window <= 0 or distance(self.expected, seq) < self.max_window

    def _deliver(self, payload: bytes) -> None:
        self.out.write(payload)
        self.expected = advance(self.expected, len(payload))

    def _flush_buffer(self) -> None:
        while self.expected in self.buffer:
            self._deliver(self.buffer.pop(self.expected))
        for seq in [s for s in self.buffer if not is_ahead(self.expected, s)]:
            del self.buffer[seq]
        self.discarded = {s for s in self.discarded if s == self.expected or is_ahead(self.expected, s)}

    def _ack(self, ack_num: int) -> Segment:
        reply = Segment.make_ack(ack_num)
        if self._last_ack is not None and not is_ahead(self._last_ack, ack_num):
            self.stats.dup_acks_sent += 1
        else:
            self._last_ack = ack_num
        self.log.sent(reply)
        return reply

    def run(self) -> ReceiverStats:
        if self.udp is None:
            raise TransportError("receiver has no endpoint to run on")

        self.udp.settimeout(POLL_INTERVAL_S)
        logger.info("receiver listening on port %d", self.udp.port)

        while self.state is not ReceiverState.CLOSED:
            try:
                raw, _ = self.udp.recvfrom()
            except TimeoutError:
                self.expire(self.clock())
                continue
            except OSError as exc:
                raise TransportError(f"receive failed: {exc}") from exc

            try:
                segment = Segment.from_bytes(raw)
            except ValueError as exc:
                logger.debug("discarding malformed datagram: %s", exc)
                continue

            reply = self.handle(segment)
            if reply is None:
                continue
            try:
                self.udp.send(reply.to_bytes())
            except OSError as exc:
                raise TransportError(f"send failed: {exc}") from exc

        self.out.flush()
        self.log.write_summary(self.stats.summary_lines())
        logger.info("receiver done; expected=%d", self.expected)
        return self.stats
