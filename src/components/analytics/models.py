"""
Analytics component input/output models.

Raw events are immutable; ReadState is the mutable per-(session, path)
aggregate owned by the reconciler; rollups are recomputed per UTC day.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

# --- Enums ---


DeviceType = Literal["mobile", "desktop", "tablet"]
DEVICE_TYPES: frozenset[str] = frozenset({"mobile", "desktop", "tablet"})


# --- Validation Error ---


@dataclass(frozen=True)
class AnalyticsValidationError:
    """Analytics validation error."""

    code: str
    message: str
    field_name: str | None = None


# --- Event Models ---


@dataclass(frozen=True)
class Viewport:
    """Client viewport dimensions."""

    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class RawEvent:
    """Normalized analytics event, persisted once and never mutated."""

    name: str
    session: str
    client_ts: datetime
    server_ts: datetime
    path: str
    referrer: str | None = None
    title: str | None = None
    device_type: str | None = None
    os: str | None = None
    browser: str | None = None
    progress_bucket: int | None = None
    ip_hash: str | None = None
    viewport: Viewport | None = None
    data: dict[str, Any] | None = None
    is_sampled: bool | None = None


@dataclass
class ReadState:
    """Durable engagement aggregate for one session on one page."""

    session: str
    path: str
    progress_max: int = 0
    completed: bool = False
    first_at: datetime | None = None
    last_at: datetime | None = None
    time_active_ms: int = 0
    last_focus_ts: datetime | None = None
    in_focus: bool = False
    referrer: str | None = None
    device_type: str | None = None
    os: str | None = None
    browser: str | None = None
    updated_at: datetime | None = None


# --- Rollup Models ---


@dataclass(frozen=True)
class PageRollup:
    """Daily per-page summary."""

    path: str
    day: date
    views: int
    sessions: int
    time_active_avg_ms: int
    time_active_median_ms: int
    time_active_p95_ms: int
    completion_rate: float
    funnel: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ReferrerRollup:
    """Daily per-referrer summary."""

    referrer: str | None
    day: date
    views: int
    sessions: int


@dataclass(frozen=True)
class UaRollup:
    """Daily per-(device, os, browser) summary."""

    device_type: str
    os: str
    browser: str
    day: date
    views: int
    sessions: int


# --- Helper Results ---


@dataclass(frozen=True)
class UserAgentDimensions:
    """Coarse user agent dimensions."""

    device_type: str
    os: str
    browser: str


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of consuming one rate limit unit."""

    allowed: bool
    remaining: int | None
    reset_seconds: int | None


@dataclass(frozen=True)
class SessionIssue:
    """Session token resolved for a request."""

    token: str
    is_new: bool


@dataclass(frozen=True)
class FilterDecision:
    """Bot and consent filter verdict."""

    accepted: bool
    reason: str | None = None


@dataclass(frozen=True)
class RequestContext:
    """Request attributes the ingestion pipeline needs."""

    headers: dict[str, str]
    cookies: dict[str, str]
    request_origin: str | None = None
    client_ip: str | None = None
    is_admin: bool = False


@dataclass(frozen=True)
class IngestPolicy:
    """Request-level ingestion limits."""

    allowed_origins: frozenset[str] = frozenset()
    rate_limit_window_seconds: int = 60
    rate_limit_max_events: int = 120


# --- Input Models ---


@dataclass(frozen=True)
class IngestBatchInput:
    """Input for ingesting a raw request body."""

    body: bytes
    context: RequestContext


@dataclass(frozen=True)
class RefreshRollupsInput:
    """Input for recomputing rollups over a day range (inclusive)."""

    from_date: date
    to_date: date


# --- Output Models ---


@dataclass(frozen=True)
class IngestOutput:
    """Output for ingestion result."""

    accepted: int
    status_code: int
    reason: str | None = None
    errors: list[AnalyticsValidationError] = field(default_factory=list)


@dataclass(frozen=True)
class RefreshRollupsOutput:
    """Output for a rollup refresh."""

    days: tuple[date, ...]
    purged_events: int = 0
    purged_read_states: int = 0
