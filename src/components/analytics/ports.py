"""
Analytics component port definitions.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Protocol

from .models import PageRollup, RawEvent, ReadState, ReferrerRollup, UaRollup


class TimePort(Protocol):
    """Time provider interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        ...


class CounterStoreError(Exception):
    """Shared counter store unreachable or failing."""


class CounterStorePort(Protocol):
    """Shared counter store (Redis-compatible increment with expiry)."""

    def incr(self, key: str) -> int:
        """Atomically increment a counter, creating it at 1."""
        ...

    def expire(self, key: str, seconds: int) -> None:
        """Set the key's time to live."""
        ...

    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds (-1 no expiry, -2 missing)."""
        ...


class RawEventStorePort(Protocol):
    """Append-only raw event storage."""

    def insert_events(self, events: Iterable[RawEvent]) -> int:
        """Insert raw events. Returns count inserted."""
        ...

    def count_views_by_path(self, start: datetime, end: datetime) -> dict[str, int]:
        """Count page_view events per path in [start, end)."""
        ...

    def count_by_referrer(
        self, start: datetime, end: datetime
    ) -> list[tuple[str | None, int, int]]:
        """Group page_view events by referrer. Rows of (referrer, views, sessions)."""
        ...

    def count_by_user_agent(
        self, start: datetime, end: datetime
    ) -> list[tuple[str, str, str, int, int]]:
        """Group page_view events by UA dims. Rows of (device, os, browser, views, sessions)."""
        ...


class ReadStateStorePort(Protocol):
    """Per-(session, path) aggregate storage."""

    def get_read_state(self, session: str, path: str) -> ReadState | None:
        """Fetch a read state, if any."""
        ...

    def update_read_state(
        self,
        session: str,
        path: str,
        apply: Callable[[ReadState | None], ReadState],
    ) -> ReadState:
        """Read-modify-write one read state atomically with respect to its key."""
        ...

    def list_read_states(self, start: datetime, end: datetime) -> list[ReadState]:
        """Read states whose last_at falls in [start, end)."""
        ...


class RollupStorePort(Protocol):
    """Daily rollup tables."""

    def replace_rollups(
        self,
        day: date,
        pages: list[PageRollup],
        referrers: list[ReferrerRollup],
        user_agents: list[UaRollup],
    ) -> None:
        """Delete and re-insert all rollup rows for a day as one unit."""
        ...

    def list_page_rollups(self, start: date, end: date) -> list[PageRollup]:
        """Page rollups for days in [start, end]."""
        ...

    def list_referrer_rollups(self, start: date, end: date) -> list[ReferrerRollup]:
        """Referrer rollups for days in [start, end]."""
        ...

    def list_ua_rollups(self, start: date, end: date) -> list[UaRollup]:
        """User agent rollups for days in [start, end]."""
        ...


class SettingsStorePort(Protocol):
    """Analytics key/value settings."""

    def get_setting(self, key: str) -> str | None:
        """Read a setting value."""
        ...

    def set_setting(self, key: str, value: str) -> None:
        """Write a setting value."""
        ...


class AnalyticsStorePort(
    RawEventStorePort,
    ReadStateStorePort,
    RollupStorePort,
    SettingsStorePort,
    Protocol,
):
    """Full analytics persistence interface."""

    def purge_expired(
        self,
        events_before: datetime,
        read_states_before: datetime,
    ) -> tuple[int, int]:
        """Delete raw events and read states older than the cutoffs."""
        ...
