from __future__ import annotations

HEADER_FORMAT = "!HH"  # type, seq
HEADER_LEN = 4

DATA = 0
ACK = 1
SYN = 2
FIN = 3

SEQ_MODULUS = 65536
SEQ_HALF = 32768

MSS = 1000

DEFAULT_TIMEOUT_MS = 250
FIN_GRACE_S = 2.0
FIN_ATTEMPTS = 10
POLL_INTERVAL_S = 0.1

SENDER_LOG = "sender_log.txt"
RECEIVER_LOG = "receiver_log.txt"
