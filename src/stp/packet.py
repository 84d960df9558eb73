from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

from .constants import ACK, DATA, FIN, HEADER_FORMAT, HEADER_LEN, MSS, SEQ_MODULUS, SYN
from .seqspace import advance


class SegmentType(enum.IntEnum):
    DATA = DATA
    ACK = ACK
    SYN = SYN
    FIN = FIN


@dataclass(frozen=True, slots=True)
class Segment:
    kind: SegmentType
    seq: int
    payload: bytes = b""

    def __post_init__(self) -> None:
        if not 0 <= self.seq < SEQ_MODULUS:
            raise ValueError(f"sequence number out of range: {self.seq}")
        if self.payload and self.kind != SegmentType.DATA:
            raise ValueError(f"{self.kind.name} segment cannot carry a payload")
        if len(self.payload) > MSS:
            raise ValueError(f"payload too large: {len(self.payload)}")

    @property
    def end_seq(self) -> int:
        """Next-expected sequence once this segment has been consumed."""
        return advance(self.seq, len(self.payload))

    def to_bytes(self) -> bytes:
        return struct.pack(HEADER_FORMAT, int(self.kind), self.seq) + self.payload

    @staticmethod
    def from_bytes(raw: bytes) -> "Segment":
        if len(raw) < HEADER_LEN:
            raise ValueError("datagram too small to be a valid segment")

        kind, seq = struct.unpack(HEADER_FORMAT, raw[:HEADER_LEN])
        try:
            seg_kind = SegmentType(kind)
        except ValueError:
            raise ValueError(f"unknown segment type: {kind}") from None

        return Segment(kind=seg_kind, seq=seq, payload=raw[HEADER_LEN:])

    @staticmethod
    def data(seq: int, payload: bytes) -> "Segment":
        return Segment(kind=SegmentType.DATA, seq=seq, payload=payload)

    @staticmethod
    def make_ack(ack_num: int) -> "Segment":
        return Segment(kind=SegmentType.ACK, seq=ack_num)

    @staticmethod
    def syn(seq: int) -> "Segment":
        return Segment(kind=SegmentType.SYN, seq=seq)

    @staticmethod
    def fin(seq: int) -> "Segment":
        return Segment(kind=SegmentType.FIN, seq=seq)
