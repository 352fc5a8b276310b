"""
Sliding window rate limiter with a cooldown block.

Each client key keeps the timestamps of its requests in the trailing
window. Going over the limit blocks the key for a fixed cooldown, during
which every request is rejected. Entries live in process memory only.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitEntry:
    """Request history and block state for one client key."""

    requests: list[float] = field(default_factory=list)
    blocked: bool = False
    blocked_at: Optional[float] = None


class RateLimiter:
    """
    In-memory per-client rate limiter.

    Defaults: more than 100 requests within 60 seconds blocks the client
    for 300 seconds. Stale timestamps are pruned lazily when the key is
    checked; idle keys are swept at most once per window.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        block_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def check_and_record(self, client_key: Optional[str], now: Optional[float] = None) -> bool:
        """
        Record a request for client_key and decide whether it may proceed.

        Returns:
            True if the request is allowed, False if it must be rejected (429)
        """
        key = client_key or UNKNOWN_CLIENT
        if now is None:
            now = self._clock()

        with self._lock:
            self._maybe_sweep(now)

            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry()
                self._entries[key] = entry

            if entry.blocked:
                if now - entry.blocked_at < self.block_seconds:
                    return False
                # Cooldown over, start a fresh window
                entry.blocked = False
                entry.blocked_at = None
                entry.requests = []

            entry.requests = [t for t in entry.requests if now - t < self.window_seconds]
            entry.requests.append(now)

            if len(entry.requests) > self.max_requests:
                entry.blocked = True
                entry.blocked_at = now
                logger.warning(
                    f"Rate limit exceeded for {key}: "
                    f"{len(entry.requests)} requests in {self.window_seconds:.0f}s, "
                    f"blocking for {self.block_seconds:.0f}s"
                )
                return False

            return True

    def get_entry(self, client_key: str) -> Optional[RateLimitEntry]:
        """Get the current entry for a key, if any."""
        with self._lock:
            return self._entries.get(client_key)

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Drop entries that hold no state worth keeping.

        An entry is idle when it is not in an active cooldown and has no
        request inside the current window; such an entry behaves exactly
        like a missing one.

        Returns:
            Number of entries removed
        """
        if now is None:
            now = self._clock()
        with self._lock:
            return self._sweep(now)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._sweep(now)

    def _sweep(self, now: float) -> int:
        self._last_sweep = now
        idle = [
            key
            for key, entry in self._entries.items()
            if not self._is_active(entry, now)
        ]
        for key in idle:
            del self._entries[key]
        if idle:
            logger.debug(f"Swept {len(idle)} idle rate limit entries")
        return len(idle)

    def _is_active(self, entry: RateLimitEntry, now: float) -> bool:
        if entry.blocked and now - entry.blocked_at < self.block_seconds:
            return True
        if entry.blocked:
            return False
        return any(now - t < self.window_seconds for t in entry.requests)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
