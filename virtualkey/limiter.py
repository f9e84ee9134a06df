"""
VirtualKey Operation Limiter

Non-blocking admission gate in front of embedded store construction.

Opening a credential store against many mounted containers in quick
succession is the dominant cost when listing keys, so at most
``max_concurrent`` constructions may be in flight. Callers that are
rejected skip the work and fall back to a default instead of queuing.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

from virtualkey.errors import RateLimitedError

logger = structlog.get_logger(__name__)


DEFAULT_MAX_CONCURRENT = 3


class OperationLimiter:
    """
    Bounded in-flight counter.

    ``acquire``/``release`` are the only operations performed under the
    lock; gated work always runs outside it.
    """

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._in_flight = 0
        self._lock = threading.Lock()

        self._stats = {
            "acquired": 0,
            "rejected": 0,
            "released": 0,
            "peak_in_flight": 0,
        }

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def acquire(self) -> bool:
        """Take a slot. Returns False immediately when at capacity."""
        with self._lock:
            if self._in_flight >= self.max_concurrent:
                self._stats["rejected"] += 1
                in_flight = self._in_flight
                admitted = False
            else:
                self._in_flight += 1
                self._stats["acquired"] += 1
                self._stats["peak_in_flight"] = max(self._stats["peak_in_flight"], self._in_flight)
                in_flight = self._in_flight
                admitted = True

        if admitted:
            logger.debug("Acquired storage operation", in_flight=in_flight, limit=self.max_concurrent)
        else:
            logger.warning("Rejected storage operation", in_flight=in_flight, limit=self.max_concurrent)
        return admitted

    def release(self) -> None:
        """Give a slot back. Releasing with nothing in flight is a no-op."""
        with self._lock:
            if self._in_flight > 0:
                self._in_flight -= 1
                self._stats["released"] += 1
            in_flight = self._in_flight

        logger.debug("Released storage operation", in_flight=in_flight, limit=self.max_concurrent)

    @contextmanager
    def admit(self) -> Iterator[None]:
        """Hold a slot for the duration of the block, or raise RateLimitedError."""
        if not self.acquire():
            raise RateLimitedError(self.in_flight, self.max_concurrent)
        try:
            yield
        finally:
            self.release()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                "in_flight": self._in_flight,
                "max_concurrent": self.max_concurrent,
            }
