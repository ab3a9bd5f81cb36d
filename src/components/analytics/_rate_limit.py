"""
Fixed-window analytics rate limiter.

Uses the shared counter store when one is configured, so the limit holds
across instances. When the store is missing or failing, counting degrades to
an in-process map: limits then apply per instance only.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock

from .models import RateLimitResult
from .ports import CounterStoreError, CounterStorePort, TimePort

logger = logging.getLogger(__name__)

KEY_PREFIX = "analytics:rate:"
PRUNE_EVERY = 256


@dataclass
class _WindowEntry:
    count: int
    expires_at: datetime


class LocalCounterFallback:
    """
    In-process fixed-window counters.

    Not shared between processes; only valid for a single instance.
    """

    def __init__(self, time_port: TimePort, prune_every: int = PRUNE_EVERY) -> None:
        self._time = time_port
        self._entries: dict[str, _WindowEntry] = {}
        self._lock = Lock()
        self._prune_every = max(1, prune_every)
        self._calls = 0

    @property
    def size(self) -> int:
        """Number of tracked windows, expired or not."""
        return len(self._entries)

    def consume(self, key: str, window_seconds: int, max_events: int) -> RateLimitResult:
        now = self._time.now_utc()
        with self._lock:
            self._calls += 1
            if self._calls % self._prune_every == 0:
                self._drop_expired(now)

            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= now:
                self._entries[key] = _WindowEntry(
                    count=1,
                    expires_at=now + timedelta(seconds=window_seconds),
                )
                return RateLimitResult(
                    allowed=True,
                    remaining=max_events - 1,
                    reset_seconds=window_seconds,
                )

            reset = math.ceil((entry.expires_at - now).total_seconds())
            if entry.count >= max_events:
                return RateLimitResult(allowed=False, remaining=0, reset_seconds=reset)

            entry.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_events - entry.count),
                reset_seconds=reset,
            )

    def prune(self) -> int:
        """Drop expired windows. Returns count removed."""
        now = self._time.now_utc()
        with self._lock:
            return self._drop_expired(now)

    def _drop_expired(self, now: datetime) -> int:
        expired = [k for k, v in self._entries.items() if v.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


class AnalyticsRateLimiter:
    """Per-key fixed window limiter with shared-store and local paths."""

    def __init__(
        self,
        time_port: TimePort,
        counter_store: CounterStorePort | None = None,
        fallback: LocalCounterFallback | None = None,
    ) -> None:
        self._counter_store = counter_store
        self._fallback = fallback or LocalCounterFallback(time_port)

    @property
    def is_shared(self) -> bool:
        """Whether a shared counter store is configured."""
        return self._counter_store is not None

    def consume(self, key: str, window_seconds: int, max_events: int) -> RateLimitResult:
        """
        Consume one unit for key.

        max_events <= 0 disables limiting for the call.
        """
        if max_events <= 0:
            return RateLimitResult(allowed=True, remaining=None, reset_seconds=None)

        if self._counter_store is not None:
            try:
                return self._consume_shared(key, window_seconds, max_events)
            except CounterStoreError:
                logger.warning(
                    "Analytics rate limit store failed; using local counters",
                    exc_info=True,
                )

        return self._fallback.consume(key, window_seconds, max_events)

    def _consume_shared(self, key: str, window_seconds: int, max_events: int) -> RateLimitResult:
        assert self._counter_store is not None
        store_key = f"{KEY_PREFIX}{key}"

        count = self._counter_store.incr(store_key)
        if count == 1:
            self._counter_store.expire(store_key, window_seconds)
            return RateLimitResult(
                allowed=True,
                remaining=max_events - 1,
                reset_seconds=window_seconds,
            )

        ttl = self._counter_store.ttl(store_key)
        if ttl < 0:
            # Counter survived without an expiry; re-arm it.
            self._counter_store.expire(store_key, window_seconds)
            ttl = window_seconds

        if count > max_events:
            return RateLimitResult(allowed=False, remaining=0, reset_seconds=ttl)

        return RateLimitResult(
            allowed=True,
            remaining=max(0, max_events - count),
            reset_seconds=ttl,
        )
