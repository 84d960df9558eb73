from __future__ import annotations

import io
import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .constants import DEFAULT_TIMEOUT_MS, FIN_GRACE_S, MSS
from .errors import StpError
from .eventlog import EventLog, ReceiverStats, SenderStats
from .net import LossSimulator, RandomSource, UdpEndpoint
from .receiver import Receiver
from .sender import Sender

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


@dataclass(frozen=True, slots=True)
class TransferResult:
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float
    sender: SenderStats
    receiver: ReceiverStats
    output: bytes
    receiver_buffered: int


def run_transfer(
    payload: bytes,
    *,
    max_window: int = 5 * MSS,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    forward_loss: float = 0.0,
    reverse_loss: float = 0.0,
    rng: Optional[RandomSource] = None,
    isn: int | None = None,
    grace_s: float = FIN_GRACE_S,
    max_handshake_attempts: int = 0,
    sender_log: Optional[EventLog] = None,
    receiver_log: Optional[EventLog] = None,
    join_timeout_s: float = 30.0,
) -> TransferResult:
    """Send ``payload`` between two loopback endpoints inside this process."""
    recv_ep = UdpEndpoint.bound(LOOPBACK, 0, peer=(LOOPBACK, 0))
    send_ep = UdpEndpoint.bound(LOOPBACK, 0, peer=(LOOPBACK, recv_ep.port))
    recv_ep.peer = (LOOPBACK, send_ep.port)

    loss = LossSimulator(forward_loss, reverse_loss, rng or random.Random())
    out = io.BytesIO()
    recv = Receiver(
        recv_ep,
        out,
        log=receiver_log or EventLog(),
        max_window=max_window,
        grace_s=grace_s,
    )

    failures: list[BaseException] = []

    def recv_runner() -> None:
        try:
            recv.run()
        except Exception as exc:
            failures.append(exc)
        finally:
            recv_ep.close()

    t = threading.Thread(target=recv_runner, name="receiver", daemon=True)
    t.start()

    sender = Sender(
        send_ep,
        io.BytesIO(payload),
        max_window=max_window,
        timeout_ms=timeout_ms,
        loss=loss,
        log=sender_log or EventLog(),
        isn=isn,
        max_handshake_attempts=max_handshake_attempts,
    )
    start = time.monotonic()
    try:
        send_stats = sender.run()
    except BaseException:
        # the receiver may still be in LISTEN; closing its socket ends run()
        recv_ep.close()
        t.join(timeout=join_timeout_s)
        raise
    duration_s = max(0.001, time.monotonic() - start)

    t.join(timeout=join_timeout_s)
    if t.is_alive():
        raise StpError("receiver did not close in time")
    if failures:
        raise failures[0]

    return TransferResult(
        bytes_transferred=len(payload),
        duration_s=duration_s,
        throughput_mbps=(len(payload) * 8 / 1_000_000) / duration_s,
        sender=send_stats,
        receiver=recv.stats,
        output=out.getvalue(),
        receiver_buffered=len(recv.buffer),
    )


def run_benchmark(
    *,
    size_bytes: int,
    max_window: int = 5 * MSS,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    forward_loss: float = 0.0,
    reverse_loss: float = 0.0,
) -> TransferResult:
    payload = os.urandom(size_bytes)
    result = run_transfer(
        payload,
        max_window=max_window,
        timeout_ms=timeout_ms,
        forward_loss=forward_loss,
        reverse_loss=reverse_loss,
    )
    if result.output != payload:
        raise StpError(f"output mismatch: sent {size_bytes} bytes, received {len(result.output)}")
    logger.info("bench done; %.2f Mbps over %.3fs", result.throughput_mbps, result.duration_s)
    return result
