"""Time and randomness sources.

Every component that reads the time or needs unpredictable bytes takes a
``Clock`` so tests can pin "now" with :class:`FrozenClock`. Wall-clock values
are epoch seconds (floats) or epoch milliseconds (ints); elapsed-time
measurements use the monotonic counter.
"""

from __future__ import annotations

import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    def now_ms(self) -> int: ...

    def monotonic(self) -> float: ...

    def utcnow(self) -> datetime: ...


class SystemClock:
    """Wall clock backed by ``time.time`` and ``time.monotonic``."""

    def now(self) -> float:
        return time.time()

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def monotonic(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Settable clock for deterministic tests.

    ``monotonic`` advances together with the wall clock so elapsed-time
    measurements stay consistent with ``advance``.
    """

    def __init__(self, start: float | None = None) -> None:
        self._lock = threading.Lock()
        self._now = float(start if start is not None else time.time())
        self._mono = 0.0

    def now(self) -> float:
        with self._lock:
            return self._now

    def now_ms(self) -> int:
        return int(self.now() * 1000)

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now(), tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds
            self._mono += seconds

    def set(self, timestamp: float) -> None:
        with self._lock:
            if timestamp > self._now:
                self._mono += timestamp - self._now
            self._now = float(timestamp)


def token_hex(nbytes: int = 16) -> str:
    """Cryptographically random hex string (lock nonces, error ids)."""
    return secrets.token_hex(nbytes)


def token_urlsafe(nbytes: int = 32) -> str:
    """Cryptographically random URL-safe string (CSRF nonces, session ids)."""
    return secrets.token_urlsafe(nbytes)


def new_node_id() -> str:
    """Identifier for this process, recorded as lock holder and blacklist issuer."""
    return secrets.token_hex(8)


def billing_period(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


system_clock = SystemClock()
