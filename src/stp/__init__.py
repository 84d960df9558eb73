"""Simple Transport Protocol (STP)

Reliable, in-order file transfer over UDP: three-way handshake, 16-bit
sequence numbers, cumulative ACKs, a byte-budget sliding window with
Go-Back-N recovery, and FIN teardown with a receiver grace period. A loss
simulator drops segments in either direction for testing.
"""

__all__ = []
