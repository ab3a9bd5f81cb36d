"""
In-memory analytics store for testing/dev.

Implements AnalyticsStorePort with plain dicts behind a single lock, so the
read-modify-write of a read state is atomic within the process.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import date, datetime
from threading import RLock

from ._events import EventKind
from .models import PageRollup, RawEvent, ReadState, ReferrerRollup, UaRollup

UNKNOWN = "unknown"


class InMemoryAnalyticsStore:
    """In-memory analytics store for testing/dev."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._events: list[RawEvent] = []
        self._read_states: dict[tuple[str, str], ReadState] = {}
        self._pages: dict[date, list[PageRollup]] = {}
        self._referrers: dict[date, list[ReferrerRollup]] = {}
        self._user_agents: dict[date, list[UaRollup]] = {}
        self._settings: dict[str, str] = {}

    # --- Raw events ---

    def insert_events(self, events: Iterable[RawEvent]) -> int:
        batch = list(events)
        with self._lock:
            self._events.extend(batch)
        return len(batch)

    def all_events(self) -> list[RawEvent]:
        """Get all stored events (for testing)."""
        with self._lock:
            return list(self._events)

    def _page_views(self, start: datetime, end: datetime) -> list[RawEvent]:
        with self._lock:
            return [
                e
                for e in self._events
                if e.name == EventKind.PAGE_VIEW.value and start <= e.server_ts < end
            ]

    def count_views_by_path(self, start: datetime, end: datetime) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        for event in self._page_views(start, end):
            counts[event.path] += 1
        return dict(counts)

    def count_by_referrer(
        self, start: datetime, end: datetime
    ) -> list[tuple[str | None, int, int]]:
        views: dict[str | None, int] = defaultdict(int)
        sessions: dict[str | None, set[str]] = defaultdict(set)
        for event in self._page_views(start, end):
            views[event.referrer] += 1
            sessions[event.referrer].add(event.session)
        return [(ref, count, len(sessions[ref])) for ref, count in views.items()]

    def count_by_user_agent(
        self, start: datetime, end: datetime
    ) -> list[tuple[str, str, str, int, int]]:
        views: dict[tuple[str, str, str], int] = defaultdict(int)
        sessions: dict[tuple[str, str, str], set[str]] = defaultdict(set)
        for event in self._page_views(start, end):
            key = (
                event.device_type or UNKNOWN,
                event.os or UNKNOWN,
                event.browser or UNKNOWN,
            )
            views[key] += 1
            sessions[key].add(event.session)
        return [(*key, count, len(sessions[key])) for key, count in views.items()]

    # --- Read state ---

    def get_read_state(self, session: str, path: str) -> ReadState | None:
        with self._lock:
            state = self._read_states.get((session, path))
            return replace(state) if state is not None else None

    def update_read_state(
        self,
        session: str,
        path: str,
        apply: Callable[[ReadState | None], ReadState],
    ) -> ReadState:
        with self._lock:
            current = self._read_states.get((session, path))
            updated = apply(replace(current) if current is not None else None)
            self._read_states[(session, path)] = updated
            return replace(updated)

    def list_read_states(self, start: datetime, end: datetime) -> list[ReadState]:
        with self._lock:
            return [
                replace(state)
                for state in self._read_states.values()
                if state.last_at is not None and start <= state.last_at < end
            ]

    # --- Rollups ---

    def replace_rollups(
        self,
        day: date,
        pages: list[PageRollup],
        referrers: list[ReferrerRollup],
        user_agents: list[UaRollup],
    ) -> None:
        with self._lock:
            self._pages[day] = list(pages)
            self._referrers[day] = list(referrers)
            self._user_agents[day] = list(user_agents)

    def list_page_rollups(self, start: date, end: date) -> list[PageRollup]:
        with self._lock:
            return [
                row for day in sorted(self._pages) if start <= day <= end for row in self._pages[day]
            ]

    def list_referrer_rollups(self, start: date, end: date) -> list[ReferrerRollup]:
        with self._lock:
            return [
                row
                for day in sorted(self._referrers)
                if start <= day <= end
                for row in self._referrers[day]
            ]

    def list_ua_rollups(self, start: date, end: date) -> list[UaRollup]:
        with self._lock:
            return [
                row
                for day in sorted(self._user_agents)
                if start <= day <= end
                for row in self._user_agents[day]
            ]

    # --- Settings ---

    def get_setting(self, key: str) -> str | None:
        with self._lock:
            return self._settings.get(key)

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self._settings[key] = value

    # --- Retention ---

    def purge_expired(
        self,
        events_before: datetime,
        read_states_before: datetime,
    ) -> tuple[int, int]:
        with self._lock:
            kept = [e for e in self._events if e.server_ts >= events_before]
            purged_events = len(self._events) - len(kept)
            self._events = kept

            expired = [
                key
                for key, state in self._read_states.items()
                if state.last_at is not None and state.last_at < read_states_before
            ]
            for key in expired:
                del self._read_states[key]

        return purged_events, len(expired)
