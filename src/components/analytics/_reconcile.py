"""
Read-state reconciler.

Folds normalized events into the per-(session, path) ReadState aggregate.

Invariants:
- progress_max never decreases and is capped at 100; completed once it hits 100
- referrer/device_type/os/browser are fill-once (first event wins)
- time_active_ms never decreases and is capped at 2 hours
- first_at/last_at are the min/max server timestamps seen

Events are sorted by (server_ts, client_ts) before folding. Progress and
attribution come out the same in any order; active time does not, which is
why the sort matters.

Focus tracking:
    idle --page_focus--> focused
    focused --page_blur|page_hide--> idle        (accrue min(gap, 5 min))
    focused --page_heartbeat, gap <= 45s--> focused  (accrue gap)
    focused --page_heartbeat, gap > 45s--> focused   (no accrual, resync)
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from ._events import EventKind
from .models import RawEvent, ReadState
from .ports import ReadStateStorePort, TimePort

MAX_PROGRESS = 100


@dataclass(frozen=True)
class ReconcileConfig:
    """Active time limits, in milliseconds."""

    max_interval_ms: int = 5 * 60 * 1000
    max_heartbeat_gap_ms: int = 45 * 1000
    max_active_ms: int = 2 * 60 * 60 * 1000


DEFAULT_CONFIG = ReconcileConfig()


def _gap_ms(later: datetime, earlier: datetime) -> int:
    return int((later - earlier).total_seconds() * 1000)


def zero_state(session: str, path: str) -> ReadState:
    """Initial aggregate for a key that has never been seen."""
    return ReadState(session=session, path=path)


def sort_for_fold(events: Iterable[RawEvent]) -> list[RawEvent]:
    """Order events for folding; client time breaks server-time ties."""
    return sorted(events, key=lambda e: (e.server_ts, e.client_ts))


def apply_event(
    state: ReadState,
    event: RawEvent,
    config: ReconcileConfig = DEFAULT_CONFIG,
) -> ReadState:
    """Apply a single event to a read state, returning the next state."""
    nxt = replace(state)

    if event.progress_bucket is not None:
        progress = max(0, min(MAX_PROGRESS, event.progress_bucket))
        nxt.progress_max = min(MAX_PROGRESS, max(nxt.progress_max, progress))
    if nxt.progress_max >= MAX_PROGRESS:
        nxt.completed = True

    if nxt.referrer is None and event.referrer:
        nxt.referrer = event.referrer
    if nxt.device_type is None and event.device_type:
        nxt.device_type = event.device_type
    if nxt.os is None and event.os:
        nxt.os = event.os
    if nxt.browser is None and event.browser:
        nxt.browser = event.browser

    if nxt.first_at is None or event.server_ts < nxt.first_at:
        nxt.first_at = event.server_ts
    if nxt.last_at is None or event.server_ts > nxt.last_at:
        nxt.last_at = event.server_ts

    accrued = 0
    if event.name == EventKind.PAGE_FOCUS.value:
        nxt.in_focus = True
        nxt.last_focus_ts = event.client_ts

    elif event.name in (EventKind.PAGE_BLUR.value, EventKind.PAGE_HIDE.value):
        if nxt.in_focus and nxt.last_focus_ts is not None:
            gap = _gap_ms(event.client_ts, nxt.last_focus_ts)
            accrued = max(0, min(gap, config.max_interval_ms))
        nxt.in_focus = False
        nxt.last_focus_ts = None

    elif event.name == EventKind.PAGE_HEARTBEAT.value:
        if nxt.in_focus and nxt.last_focus_ts is not None:
            gap = _gap_ms(event.client_ts, nxt.last_focus_ts)
            if 0 <= gap <= config.max_heartbeat_gap_ms:
                accrued = gap
            if gap >= 0:
                # Missed heartbeats accrue nothing but still resync.
                nxt.last_focus_ts = event.client_ts

    if accrued:
        nxt.time_active_ms = min(config.max_active_ms, nxt.time_active_ms + accrued)

    return nxt


def fold_events(
    state: ReadState,
    events: Iterable[RawEvent],
    config: ReconcileConfig = DEFAULT_CONFIG,
) -> ReadState:
    """Sort events and fold them over a starting state."""
    for event in sort_for_fold(events):
        state = apply_event(state, event, config)
    return state


def group_events(events: Iterable[RawEvent]) -> dict[tuple[str, str], list[RawEvent]]:
    """Group events by (session, path), preserving first-seen key order."""
    groups: dict[tuple[str, str], list[RawEvent]] = defaultdict(list)
    for event in events:
        groups[(event.session, event.path)].append(event)
    return groups


class ReadStateReconciler:
    """Merges event batches into stored read states."""

    def __init__(
        self,
        store: ReadStateStorePort,
        time_port: TimePort,
        config: ReconcileConfig | None = None,
    ) -> None:
        self._store = store
        self._time = time_port
        self._config = config or DEFAULT_CONFIG

    def reconcile(self, events: Iterable[RawEvent]) -> list[ReadState]:
        """Fold each (session, path) group into its stored aggregate."""
        results: list[ReadState] = []

        for (session, path), group in group_events(events).items():
            apply = self._folder(session, path, group, self._time.now_utc())
            results.append(self._store.update_read_state(session, path, apply))

        return results

    def _folder(
        self,
        session: str,
        path: str,
        group: list[RawEvent],
        now: datetime,
    ) -> Callable[[ReadState | None], ReadState]:
        def apply(current: ReadState | None) -> ReadState:
            base = current if current is not None else zero_state(session, path)
            folded = fold_events(base, group, self._config)
            folded.updated_at = now
            return folded

        return apply
