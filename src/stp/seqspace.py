"""16-bit sequence space arithmetic.

Cursors wrap at 65536. Ordering uses the half-window rule: ``b`` is ahead of
``a`` when the forward distance from ``a`` to ``b`` is non-zero and less than
half the modulus.
"""
from __future__ import annotations

from .constants import SEQ_HALF, SEQ_MODULUS


def advance(cursor: int, n: int) -> int:
    return (cursor + n) % SEQ_MODULUS


def distance(a: int, b: int) -> int:
    """Forward distance from ``a`` to ``b``."""
    return (b - a) % SEQ_MODULUS


def is_ahead(a: int, b: int) -> bool:
    """True when ``b`` lies ahead of ``a``."""
    return 0 < distance(a, b) < SEQ_HALF
