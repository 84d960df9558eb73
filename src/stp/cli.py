from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import NoReturn

from .bench import run_benchmark
from .config import ReceiverConfig, SenderConfig
from .constants import DEFAULT_TIMEOUT_MS, MSS, POLL_INTERVAL_S, RECEIVER_LOG, SENDER_LOG
from .errors import ConfigError, StpError
from .eventlog import EventLog
from .net import LossSimulator, UdpEndpoint
from .receiver import Receiver
from .sender import Sender

logger = logging.getLogger("stp")

EXIT_FAILURE = 1


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def _emit(payload: dict, as_json: bool) -> None:
    print(json.dumps(payload, indent=2) if as_json else payload)


def cmd_recv(args: argparse.Namespace) -> int:
    cfg = ReceiverConfig(
        receiver_port=args.recv_port,
        sender_port=args.sender_port,
        output_file=args.output_file,
        max_window=args.max_window,
        host=args.host,
        log_file=args.log_file or RECEIVER_LOG,
    ).validate()

    log = EventLog.open(cfg.log_file)
    try:
        udp = UdpEndpoint.bound(cfg.host, cfg.receiver_port, (cfg.host, cfg.sender_port), POLL_INTERVAL_S)
        try:
            with open(cfg.output_file, "wb") as out:
                stats = Receiver(udp, out, log=log, max_window=cfg.max_window, grace_s=cfg.grace_s).run()
        finally:
            udp.close()
    finally:
        log.close()

    _emit({"role": "receiver", **stats.as_dict()}, args.json)
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    cfg = SenderConfig(
        sender_port=args.sender_port,
        receiver_port=args.recv_port,
        input_file=args.input_file,
        max_window=args.max_window,
        timeout_ms=args.timer_ms,
        forward_loss=args.forward_loss,
        reverse_loss=args.reverse_loss,
        host=args.host,
        log_file=args.log_file or SENDER_LOG,
        max_handshake_attempts=args.max_syn_attempts,
    ).validate()

    with open(cfg.input_file, "rb") as f:
        log = EventLog.open(cfg.log_file)
        try:
            udp = UdpEndpoint.bound(cfg.host, cfg.sender_port, (cfg.host, cfg.receiver_port))
            try:
                stats = Sender(
                    udp,
                    f,
                    max_window=cfg.max_window,
                    timeout_ms=cfg.timeout_ms,
                    loss=LossSimulator(cfg.forward_loss, cfg.reverse_loss),
                    log=log,
                    max_handshake_attempts=cfg.max_handshake_attempts,
                ).run()
            finally:
                udp.close()
        finally:
            log.close()

    _emit({"role": "sender", **stats.as_dict()}, args.json)
    return 0


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        size_bytes=args.size_bytes,
        max_window=args.max_window,
        timeout_ms=args.timer_ms,
        forward_loss=args.forward_loss,
        reverse_loss=args.reverse_loss,
    )
    payload = {
        "role": "bench",
        "bytes": r.bytes_transferred,
        "seconds": r.duration_s,
        "mbps": r.throughput_mbps,
        "sender": r.sender.as_dict(),
        "receiver": r.receiver.as_dict(),
    }
    _emit(payload, args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(prog="stp", description="Reliable file transfer over UDP (Go-Back-N).")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True, parser_class=_ArgumentParser)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--host", default="localhost")
        x.add_argument("--log-file", default=None, help="event log path")
        x.add_argument("--json", action="store_true")

    recv = sub.add_parser("recv", help="receive a file and write it to disk")
    recv.add_argument("recv_port", type=int)
    recv.add_argument("sender_port", type=int)
    recv.add_argument("output_file")
    recv.add_argument("max_window", type=int)
    add_common(recv)
    recv.set_defaults(func=cmd_recv)

    send = sub.add_parser("send", help="send a file to a receiver")
    send.add_argument("sender_port", type=int)
    send.add_argument("recv_port", type=int)
    send.add_argument("input_file")
    send.add_argument("max_window", type=int)
    send.add_argument("timer_ms", type=int)
    send.add_argument("forward_loss", type=float)
    send.add_argument("reverse_loss", type=float)
    send.add_argument("--max-syn-attempts", type=int, default=0, help="0 retries forever")
    add_common(send)
    send.set_defaults(func=cmd_send)

    bench = sub.add_parser("bench", help="loopback transfer inside one process")
    bench.add_argument("--size-bytes", type=int, default=1_000_000)
    bench.add_argument("--max-window", type=int, default=5 * MSS)
    bench.add_argument("--timer-ms", type=int, default=DEFAULT_TIMEOUT_MS)
    bench.add_argument("--forward-loss", type=float, default=0.0)
    bench.add_argument("--reverse-loss", type=float, default=0.0)
    bench.add_argument("--json", action="store_true")
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")

    try:
        return int(args.func(args))
    except ConfigError as exc:
        print(f"stp: error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except OSError:
        logger.exception("I/O failure")
        return EXIT_FAILURE
    except StpError:
        logger.exception("transfer failed")
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
