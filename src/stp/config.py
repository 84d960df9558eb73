from __future__ import annotations

from dataclasses import dataclass

from .constants import DEFAULT_TIMEOUT_MS, FIN_GRACE_S, MSS, RECEIVER_LOG, SENDER_LOG
from .errors import ConfigError


def _check_port(name: str, port: int) -> None:
    if not 0 <= port <= 65535:
        raise ConfigError(f"{name} must be within 0..65535, got {port}")


def _check_window(max_window: int) -> None:
    if max_window <= 0 or max_window % MSS != 0:
        raise ConfigError(f"max window must be a positive multiple of {MSS}, got {max_window}")


def check_probability(name: str, p: float) -> None:
    if not 0.0 <= p <= 1.0:
        raise ConfigError(f"{name} must be within [0, 1], got {p}")


@dataclass(frozen=True, slots=True)
class SenderConfig:
    sender_port: int
    receiver_port: int
    input_file: str
    max_window: int
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    forward_loss: float = 0.0
    reverse_loss: float = 0.0
    host: str = "localhost"
    log_file: str = SENDER_LOG
    max_handshake_attempts: int = 0

    def validate(self) -> "SenderConfig":
        _check_port("sender port", self.sender_port)
        _check_port("receiver port", self.receiver_port)
        _check_window(self.max_window)
        if self.timeout_ms <= 0:
            raise ConfigError(f"timer must be positive, got {self.timeout_ms}ms")
        check_probability("forward loss probability", self.forward_loss)
        check_probability("reverse loss probability", self.reverse_loss)
        if self.max_handshake_attempts < 0:
            raise ConfigError("handshake attempt ceiling cannot be negative")
        return self


@dataclass(frozen=True, slots=True)
class ReceiverConfig:
    receiver_port: int
    sender_port: int
    output_file: str
    max_window: int
    host: str = "localhost"
    log_file: str = RECEIVER_LOG
    grace_s: float = FIN_GRACE_S

    def validate(self) -> "ReceiverConfig":
        _check_port("receiver port", self.receiver_port)
        _check_port("sender port", self.sender_port)
        if self.max_window <= 0:
            raise ConfigError(f"max window must be positive, got {self.max_window}")
        if self.grace_s < 0:
            raise ConfigError("grace period cannot be negative")
        return self
