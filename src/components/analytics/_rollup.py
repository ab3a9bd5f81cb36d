"""
Rollup engine - daily page, referrer and user agent summaries.

Each UTC day is recomputed from raw events and read state and then
replaced in a single delete-then-insert, so re-running a range is safe and
produces identical rows. Errors propagate to the caller (scheduler, trigger
or CLI), which can simply re-run the failed day.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol

from .models import PageRollup, ReadState, ReferrerRollup, UaRollup
from .ports import RawEventStorePort, ReadStateStorePort, RollupStorePort

logger = logging.getLogger(__name__)

FUNNEL_BUCKETS: tuple[int, ...] = tuple(range(0, 101, 5))
MAX_SESSION_ACTIVE_MS = 2 * 60 * 60 * 1000


class RollupSourcePort(RawEventStorePort, ReadStateStorePort, RollupStorePort, Protocol):
    """Everything the rollup engine reads and writes."""


# --- Pure Helpers ---


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC [start, end) of a calendar day."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


def enumerate_days(from_date: date, to_date: date) -> list[date]:
    """Every calendar day in [from_date, to_date]."""
    days: list[date] = []
    cursor = from_date
    while cursor <= to_date:
        days.append(cursor)
        cursor += timedelta(days=1)
    return days


def compute_percentile(sorted_values: list[int], percentile: float) -> float:
    """Percentile by linear interpolation on an already sorted sample."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])

    position = (len(sorted_values) - 1) * percentile
    lower = int(position)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = position - lower
    if lower == upper:
        return float(sorted_values[lower])
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


@dataclass
class _PageMetrics:
    path: str
    views: int = 0
    sessions: int = 0
    times: list[int] = field(default_factory=list)
    funnel: dict[int, int] = field(default_factory=dict)


def build_page_rollups(
    day: date,
    views_by_path: dict[str, int],
    states: Iterable[ReadState],
) -> list[PageRollup]:
    """Combine view counts and read states into per-page rows, sorted by path."""
    metrics: dict[str, _PageMetrics] = {}

    def entry(path: str) -> _PageMetrics:
        if path not in metrics:
            metrics[path] = _PageMetrics(path=path)
        return metrics[path]

    for path, views in views_by_path.items():
        if path:
            entry(path).views = views

    for state in states:
        if not state.path:
            continue
        m = entry(state.path)
        m.sessions += 1
        m.times.append(max(0, min(MAX_SESSION_ACTIVE_MS, state.time_active_ms or 0)))
        progress = max(0, min(100, state.progress_max or 0))
        for bucket in FUNNEL_BUCKETS:
            if progress >= bucket:
                m.funnel[bucket] = m.funnel.get(bucket, 0) + 1

    rows: list[PageRollup] = []
    for path in sorted(metrics):
        m = metrics[path]
        sorted_times = sorted(m.times)
        average = sum(m.times) / m.sessions if m.sessions else 0.0
        rows.append(
            PageRollup(
                path=path,
                day=day,
                views=m.views,
                sessions=m.sessions,
                time_active_avg_ms=_round_half_up(average),
                time_active_median_ms=_round_half_up(compute_percentile(sorted_times, 0.5)),
                time_active_p95_ms=_round_half_up(compute_percentile(sorted_times, 0.95)),
                completion_rate=(m.funnel.get(100, 0) / m.sessions) if m.sessions else 0.0,
                funnel={f"b{b}": m.funnel.get(b, 0) for b in FUNNEL_BUCKETS},
            )
        )
    return rows


# --- Engine ---


class RollupEngine:
    """Recomputes daily rollups from raw events and read state."""

    def __init__(self, store: RollupSourcePort) -> None:
        self._store = store

    def recompute_day(self, day: date) -> tuple[int, int, int]:
        """Rebuild all rollups for one day. Returns row counts written."""
        start, end = day_bounds(day)

        views = self._store.count_views_by_path(start, end)
        states = self._store.list_read_states(start, end)
        pages = build_page_rollups(day, views, states)

        referrers = [
            ReferrerRollup(referrer=ref, day=day, views=v, sessions=s)
            for ref, v, s in sorted(
                self._store.count_by_referrer(start, end),
                key=lambda row: (row[0] is not None, row[0] or ""),
            )
        ]
        user_agents = [
            UaRollup(device_type=d, os=o, browser=b, day=day, views=v, sessions=s)
            for d, o, b, v, s in sorted(self._store.count_by_user_agent(start, end))
        ]

        self._store.replace_rollups(day, pages, referrers, user_agents)
        logger.info(
            "Rollups for %s: %d pages, %d referrers, %d user agents",
            day.isoformat(),
            len(pages),
            len(referrers),
            len(user_agents),
        )
        return len(pages), len(referrers), len(user_agents)

    def refresh(self, from_date: date, to_date: date) -> list[date]:
        """Recompute every day in [from_date, to_date]; each day commits on its own."""
        days = enumerate_days(from_date, to_date)
        for day in days:
            self.recompute_day(day)
        return days
