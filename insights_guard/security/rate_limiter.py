"""Per-principal token bucket rate limiting for admin insights requests.

Each principal gets two buckets: a short window (per minute) and a long
window (per hour). Refill is continuous and computed lazily on every
check, so there is no background ticker. A request is admitted only
when both buckets hold a whole token, and then both are decremented
together.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import structlog

logger = structlog.get_logger()

MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0


@dataclass
class TokenBucket:
    """Continuously refilling bucket of ``capacity`` tokens per ``period`` seconds."""

    capacity: int
    period: float
    tokens: float
    last_refill: float

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.capacity / self.period)
        self.last_refill = now

    @property
    def available(self) -> int:
        return int(self.tokens)


@dataclass
class _PrincipalBuckets:
    minute: TokenBucket
    hour: TokenBucket
    last_seen: float
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Set under the lock when the entry leaves the registry
    evicted: bool = False


class RateLimiter:
    """Two-window token bucket limiter keyed by principal ID.

    The per-principal lock covers only bucket arithmetic. The registry
    lock covers only insertion and eviction of map entries, so callers
    for different principals never wait on each other's arithmetic.
    """

    def __init__(
        self,
        per_minute: int = 30,
        per_hour: int = 100,
        idle_ttl: float = 2 * HOUR_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the limiter.

        Args:
            per_minute: Capacity and refill of the short window.
            per_hour: Capacity and refill of the long window.
            idle_ttl: Seconds without a request before a principal's
                buckets are dropped. Must cover the hour window so an
                evicted pair is always already full.
            clock: Monotonic time source, injectable for tests.

        Raises:
            ValueError: If a limit is below 1 or idle_ttl is below an hour.
        """
        if per_minute < 1 or per_hour < 1:
            raise ValueError("Rate limits must be at least 1")
        if idle_ttl < HOUR_SECONDS:
            raise ValueError("idle_ttl must be at least one hour")
        self.per_minute = per_minute
        self.per_hour = per_hour
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._entries: dict[str, _PrincipalBuckets] = {}
        self._registry_lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def check_and_consume(self, principal_id: str) -> bool:
        """Admit one request for the principal if both windows allow it.

        Returns:
            True if admitted (one token taken from each bucket), False
            if denied (neither bucket changed).
        """
        now = self._clock()
        self._maybe_evict(now)

        while True:
            entry = self._entry(principal_id, now)
            with entry.lock:
                # Dropped from the map after we looked it up; charge the live entry instead
                if entry.evicted:
                    continue
                entry.minute.refill(now)
                entry.hour.refill(now)
                entry.last_seen = now
                minute_ok = entry.minute.tokens >= 1
                hour_ok = entry.hour.tokens >= 1
                if minute_ok and hour_ok:
                    entry.minute.tokens -= 1
                    entry.hour.tokens -= 1
                    return True
            break

        window = "minute" if not minute_ok else "hour"
        limit = self.per_minute if window == "minute" else self.per_hour
        logger.warning("rate_limit_exceeded", principal_id=principal_id, window=window, limit=limit)
        return False

    def remaining(self, principal_id: str) -> tuple[int, int]:
        """Whole tokens left as ``(minute, hour)``. Does not consume."""
        entry = self._entries.get(principal_id)
        if entry is None:
            return self.per_minute, self.per_hour
        now = self._clock()
        with entry.lock:
            entry.minute.refill(now)
            entry.hour.refill(now)
            return entry.minute.available, entry.hour.available

    def clear(self, principal_id: str) -> None:
        """Forget a principal's buckets (admin override or tests)."""
        with self._registry_lock:
            removed = self._entries.pop(principal_id, None)
            if removed is not None:
                with removed.lock:
                    removed.evicted = True
        if removed is not None:
            logger.info("rate_limit_cleared", principal_id=principal_id)

    def evict_idle(self) -> int:
        """Drop buckets idle for longer than ``idle_ttl``. Returns the count removed."""
        now = self._clock()
        removed = 0
        with self._registry_lock:
            for pid, entry in list(self._entries.items()):
                with entry.lock:
                    if now - entry.last_seen < self.idle_ttl:
                        continue
                    entry.evicted = True
                del self._entries[pid]
                removed += 1
            self._last_sweep = now
        if removed:
            logger.debug("rate_buckets_evicted", count=removed)
        return removed

    def _maybe_evict(self, now: float) -> None:
        if now - self._last_sweep >= self.idle_ttl:
            self.evict_idle()

    def _entry(self, principal_id: str, now: float) -> _PrincipalBuckets:
        entry = self._entries.get(principal_id)
        if entry is not None:
            return entry
        with self._registry_lock:
            entry = self._entries.get(principal_id)
            if entry is None:
                entry = _PrincipalBuckets(
                    minute=TokenBucket(self.per_minute, MINUTE_SECONDS, float(self.per_minute), now),
                    hour=TokenBucket(self.per_hour, HOUR_SECONDS, float(self.per_hour), now),
                    last_seen=now,
                )
                self._entries[principal_id] = entry
            return entry
