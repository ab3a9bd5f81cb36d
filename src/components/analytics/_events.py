"""
Known analytics event kinds and enabled-event parsing.
"""

from __future__ import annotations

from enum import Enum


class EventKind(str, Enum):
    """Event kinds the ingestion endpoint understands."""

    PAGE_VIEW = "page_view"
    READ_PROGRESS = "read_progress"
    READ_COMPLETE = "read_complete"
    PARA_OPEN = "para_open"
    COMMENT_SUBMIT = "comment_submit"
    SEARCH_QUERY = "search_query"
    SORT_CHANGE = "sort_change"
    PAGE_FOCUS = "page_focus"
    PAGE_BLUR = "page_blur"
    PAGE_HIDE = "page_hide"
    PAGE_HEARTBEAT = "page_heartbeat"


KNOWN_EVENTS: frozenset[str] = frozenset(kind.value for kind in EventKind)

DEFAULT_ENABLED_EVENTS: tuple[str, ...] = (
    EventKind.PAGE_VIEW.value,
    EventKind.READ_PROGRESS.value,
    EventKind.READ_COMPLETE.value,
    EventKind.COMMENT_SUBMIT.value,
    EventKind.PAGE_FOCUS.value,
    EventKind.PAGE_BLUR.value,
    EventKind.PAGE_HIDE.value,
    EventKind.PAGE_HEARTBEAT.value,
)


def is_known_event(value: object) -> bool:
    """Check whether value names a known event kind."""
    return isinstance(value, str) and value in KNOWN_EVENTS


def parse_enabled_events(value: str | list[str] | None) -> frozenset[str]:
    """
    Parse an enabled-events setting.

    Accepts a comma-separated string or a list. Unknown names are ignored;
    an empty result falls back to the defaults.
    """
    if not value:
        return frozenset(DEFAULT_ENABLED_EVENTS)

    candidates = value.split(",") if isinstance(value, str) else value
    enabled = {c.strip() for c in candidates if is_known_event(c.strip())}

    if not enabled:
        return frozenset(DEFAULT_ENABLED_EVENTS)
    return frozenset(enabled)
