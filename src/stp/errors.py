from __future__ import annotations


class StpError(Exception):
    pass


class ConfigError(StpError, ValueError):
    pass


class TransportError(StpError):
    pass


class HandshakeError(StpError):
    pass
