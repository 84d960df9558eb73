"""Protocol event log and the counters summarised at the end of it.

Each endpoint writes one line per send, receive or simulated drop::

    snd 0.042 DATA 4512 1000

followed at teardown by the endpoint's summary counters. Lines are written as
events happen so the file reflects the connection up to any failure.
"""
from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, fields
from typing import Callable, Iterable, List, Optional, TextIO

from .packet import Segment, SegmentType

Clock = Callable[[], float]


class Direction(str, enum.Enum):
    SENT = "snd"
    RECEIVED = "rcv"
    DROPPED = "drp"


@dataclass(frozen=True, slots=True)
class LogEntry:
    direction: Direction
    elapsed_s: float
    kind: SegmentType
    seq: int
    length: int

    def format(self) -> str:
        ms = int(self.elapsed_s * 1000)
        return f"{self.direction.value} {ms // 1000}.{ms % 1000:03d} {self.kind.name} {self.seq} {self.length}"


@dataclass(slots=True)
class SenderStats:
    original_data_sent: int = 0
    original_data_acked: int = 0
    original_segments_sent: int = 0
    retransmitted_segments: int = 0
    dup_acks_received: int = 0
    data_segments_dropped: int = 0
    ack_segments_dropped: int = 0

    def summary_lines(self) -> List[str]:
        return [
            f"Original data sent: {self.original_data_sent}",
            f"Original data acked: {self.original_data_acked}",
            f"Original segments sent: {self.original_segments_sent}",
            f"Retransmitted segments: {self.retransmitted_segments}",
            f"Dup acks received: {self.dup_acks_received}",
            f"Data segments dropped: {self.data_segments_dropped}",
            f"Ack segments dropped: {self.ack_segments_dropped}",
        ]

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(slots=True)
class ReceiverStats:
    original_data_received: int = 0
    original_segments_received: int = 0
    dup_data_segments_received: int = 0
    dup_acks_sent: int = 0

    def summary_lines(self) -> List[str]:
        return [
            f"Original data received: {self.original_data_received}",
            f"Original segments received: {self.original_segments_received}",
            f"Dup data segments received: {self.dup_data_segments_received}",
            f"Dup ack segments sent: {self.dup_acks_sent}",
        ]

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class EventLog:
    """Append-only, thread-safe event record for one endpoint."""

    def __init__(self, stream: Optional[TextIO] = None, clock: Clock = time.monotonic):
        self._stream = stream
        self._clock = clock
        self._lock = threading.Lock()
        self._start: float | None = None
        self.entries: List[LogEntry] = []

    @classmethod
    def open(cls, path: str, clock: Clock = time.monotonic) -> "EventLog":
        # truncated on every run
        return cls(open(path, "w", encoding="utf-8"), clock)

    @property
    def started(self) -> bool:
        return self._start is not None

    def start(self) -> None:
        """Mark the connection start; elapsed times are measured from here."""
        with self._lock:
            self._start = self._clock()

    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        return max(0.0, self._clock() - self._start)

    def record(self, direction: Direction, segment: Segment) -> LogEntry:
        with self._lock:
            entry = LogEntry(
                direction=direction,
                elapsed_s=self.elapsed(),
                kind=segment.kind,
                seq=segment.seq,
                length=len(segment.payload),
            )
            self.entries.append(entry)
            if self._stream is not None:
                self._stream.write(entry.format() + "\n")
                self._stream.flush()
        return entry

    def sent(self, segment: Segment) -> LogEntry:
        return self.record(Direction.SENT, segment)

    def received(self, segment: Segment) -> LogEntry:
        return self.record(Direction.RECEIVED, segment)

    def dropped(self, segment: Segment) -> LogEntry:
        return self.record(Direction.DROPPED, segment)

    def write_summary(self, lines: Iterable[str]) -> None:
        with self._lock:
            if self._stream is None:
                return
            for line in lines:
                self._stream.write(line + "\n")
            self._stream.flush()

    def close(self) -> None:
        with self._lock:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
