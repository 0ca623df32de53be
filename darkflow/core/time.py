"""
darkflow/core/time.py

Fresh swap nonces.

A nonce scopes one swap attempt's derived addresses, so two attempts by the
same owner must never share one. Nonces are current UTC milliseconds,
bumped past the last value handed out by the same source so that two
attempts inside one millisecond still differ.
"""

import threading
from datetime import datetime, timezone


def unix_millis() -> int:
    """Current UTC time in whole milliseconds since the epoch."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class NonceSource:
    """Strictly increasing, time-derived u64 nonces. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            nonce = max(unix_millis(), self._last + 1)
            self._last = nonce
            return nonce
