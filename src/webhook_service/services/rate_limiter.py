"""Per-subscription rate limiting for delivery attempts.

A sliding log keeps the timestamp of every granted attempt inside the last
window, so the bound holds over *any* rolling window, not only aligned ones.
State is process-local: with several service instances each one enforces the
limit on its own (best-effort politeness, not a correctness guarantee).
"""
from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict, Protocol
from uuid import UUID

WINDOW_SECONDS = 60.0


class RateLimiter(Protocol):
    def try_acquire(self, webhook_id: UUID, limit: int) -> bool: ...


class SlidingWindowRateLimiter:
    """Grants at most ``limit`` permits per key within ``window_seconds``."""

    def __init__(
        self,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window = window_seconds
        self._clock = clock
        self._granted: Dict[UUID, Deque[float]] = {}
        self._last_prune = clock()

    @property
    def tracked_keys(self) -> int:
        return len(self._granted)

    def try_acquire(self, webhook_id: UUID, limit: int) -> bool:
        now = self._clock()
        if now - self._last_prune >= self._window:
            self.prune(now)
        granted = self._granted.setdefault(webhook_id, deque())
        while granted and granted[0] <= now - self._window:
            granted.popleft()
        if len(granted) >= limit:
            return False
        granted.append(now)
        return True

    def prune(self, now: float | None = None) -> int:
        """Forget keys with no permit inside the window. Returns keys dropped."""
        now = self._clock() if now is None else now
        cutoff = now - self._window
        stale = [key for key, granted in self._granted.items() if not granted or granted[-1] <= cutoff]
        for key in stale:
            del self._granted[key]
        self._last_prune = now
        return len(stale)

    def in_window(self, webhook_id: UUID) -> int:
        """Permits granted to ``webhook_id`` in the current window."""
        now = self._clock()
        return sum(1 for ts in self._granted.get(webhook_id, ()) if ts > now - self._window)
