from __future__ import annotations

import random
import socket
from dataclasses import dataclass, field
from typing import Protocol, Tuple

from .config import check_probability


class RandomSource(Protocol):
    def random(self) -> float: ...


@dataclass(slots=True)
class LossSimulator:
    """Independent Bernoulli drops for each direction of the connection."""

    forward: float = 0.0
    reverse: float = 0.0
    rng: RandomSource = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        check_probability("forward loss probability", self.forward)
        check_probability("reverse loss probability", self.reverse)

    def should_drop(self, probability: float) -> bool:
        if probability <= 0.0:
            return False
        return self.rng.random() < probability

    def drop_forward(self) -> bool:
        return self.should_drop(self.forward)

    def drop_reverse(self) -> bool:
        return self.should_drop(self.reverse)


class UdpEndpoint:
    """A bound UDP socket talking to one fixed peer."""

    def __init__(self, sock: socket.socket, peer: Tuple[str, int]):
        self.sock = sock
        self.peer = peer

    @classmethod
    def bound(
        cls,
        host: str,
        port: int,
        peer: Tuple[str, int],
        timeout_s: float = 0.0,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((host, port))
        if timeout_s > 0:
            sock.settimeout(timeout_s)
        return cls(sock, peer)

    @property
    def port(self) -> int:
        return self.sock.getsockname()[1]

    def settimeout(self, timeout_s: float | None) -> None:
        self.sock.settimeout(timeout_s)

    def send(self, data: bytes) -> None:
        self.sock.sendto(data, self.peer)

    def recvfrom(self, bufsize: int = 65535) -> Tuple[bytes, Tuple[str, int]]:
        return self.sock.recvfrom(bufsize)

    def close(self) -> None:
        self.sock.close()
