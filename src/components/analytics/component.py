"""
Analytics component - Event ingestion, read-state reconciliation and rollups.

Ingestion turns one collector request into raw events and folds them into
per-(session, path) read states. Rollup refresh recomputes whole UTC days.

Invariants:
- Only salted hashes of the session token and client IP are persisted
- Policy rejections and storage failures answer 204, never an error
- The read-state fold runs inside a per-key read-modify-write
- A refreshed day is replaced as one unit; re-running it yields the same rows
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from ._filter import declares_automation, should_accept
from ._flag import AnalyticsFlagCache
from ._normalize import EventNormalizer, NormalizeContext, extract_candidates
from ._rate_limit import AnalyticsRateLimiter
from ._reconcile import ReadStateReconciler
from ._rollup import RollupEngine
from ._session import SessionIdentityService, is_valid_token
from .models import (
    IngestBatchInput,
    IngestOutput,
    IngestPolicy,
    RefreshRollupsInput,
    RefreshRollupsOutput,
)
from .ports import AnalyticsStorePort, TimePort

logger = logging.getLogger(__name__)

STATUS_ACCEPTED = 202
STATUS_NO_CONTENT = 204

DEFAULT_RETENTION_DAYS = 60
MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 30


def _skip(reason: str, errors: list | None = None) -> IngestOutput:
    return IngestOutput(
        accepted=0,
        status_code=STATUS_NO_CONTENT,
        reason=reason,
        errors=list(errors or []),
    )


# --- Component Entry Points ---


def run_ingest(
    inp: IngestBatchInput,
    *,
    store: AnalyticsStorePort,
    sessions: SessionIdentityService,
    rate_limiter: AnalyticsRateLimiter,
    normalizer: EventNormalizer,
    time_port: TimePort,
    flag: AnalyticsFlagCache | None = None,
    policy: IngestPolicy | None = None,
) -> IngestOutput:
    """
    Ingest one collector request.

    Checks run in order: enabled flag, origin, privacy signals, bot UA,
    session cookie, admin exclusion, payload decode, automation flag,
    rate limit. Surviving events are stored and reconciled.

    Args:
        inp: Raw request body plus the request attributes.
        store: Analytics persistence.
        sessions: Session identity service (hashing and cookie name).
        rate_limiter: Per-session limiter.
        normalizer: Event normalizer.
        time_port: Clock used for server timestamps.
        flag: Optional enabled flag cache; None means always enabled.
        policy: Origin allow-list and rate limit settings.

    Returns:
        IngestOutput with status 202 and the accepted count, or 204 and the
        reason the request was skipped.
    """
    policy = policy or IngestPolicy()
    ctx = inp.context

    if flag is not None and not flag.is_enabled():
        return _skip("disabled")

    decision = should_accept(ctx, policy.allowed_origins, session_cookie=sessions.cookie_name)
    if not decision.accepted:
        return _skip(decision.reason or "rejected")

    token = ctx.cookies.get(sessions.cookie_name)
    if not is_valid_token(token):
        return _skip("no_session")
    assert token is not None

    candidates = extract_candidates(inp.body)
    if not candidates:
        return _skip("empty")

    if declares_automation(candidates):
        return _skip("automation")

    server_ts = time_port.now_utc()
    session_hash = sessions.hash_session(token)
    normalized = normalizer.normalize_candidates(
        candidates,
        NormalizeContext(
            session=session_hash,
            server_ts=server_ts,
            user_agent=ctx.headers.get("user-agent", ""),
            ip_hash=sessions.anonymize_network_identifier(ctx.client_ip),
        ),
    )
    if not normalized.events:
        return _skip("no_valid_events", normalized.rejections)

    allowed = []
    for event in normalized.events:
        result = rate_limiter.consume(
            session_hash,
            policy.rate_limit_window_seconds,
            policy.rate_limit_max_events,
        )
        if not result.allowed:
            break
        allowed.append(event)

    if not allowed:
        return _skip("rate_limited", normalized.rejections)

    try:
        store.insert_events(allowed)
        ReadStateReconciler(store, time_port).reconcile(allowed)
    except Exception:
        logger.exception("Failed to persist %d analytics events", len(allowed))
        return _skip("storage_error", normalized.rejections)

    return IngestOutput(
        accepted=len(allowed),
        status_code=STATUS_ACCEPTED,
        errors=list(normalized.rejections),
    )


def run_refresh(
    inp: RefreshRollupsInput,
    *,
    store: AnalyticsStorePort,
    time_port: TimePort,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> RefreshRollupsOutput:
    """
    Purge expired data, then recompute rollups for each day in the range.

    Errors propagate; days finished before a failure stay committed.

    Raises:
        ValueError: If from_date is after to_date.
    """
    if inp.from_date > inp.to_date:
        raise ValueError(
            f"from_date {inp.from_date.isoformat()} is after to_date {inp.to_date.isoformat()}"
        )

    cutoff = time_port.now_utc() - timedelta(days=retention_days)
    purged_events, purged_states = store.purge_expired(cutoff, cutoff)
    if purged_events or purged_states:
        logger.info(
            "Purged %d raw events and %d read states older than %s",
            purged_events,
            purged_states,
            cutoff.isoformat(),
        )

    days = RollupEngine(store).refresh(inp.from_date, inp.to_date)
    return RefreshRollupsOutput(
        days=tuple(days),
        purged_events=purged_events,
        purged_read_states=purged_states,
    )


def clamp_lookback_days(value: int | str | None, default: int = 3) -> int:
    """Lookback in days, clamped to 1..30; junk falls back to the default."""
    if value is None or value == "":
        return default
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    if parsed < 0:
        return default
    return min(MAX_LOOKBACK_DAYS, max(MIN_LOOKBACK_DAYS, parsed))


def lookback_input(today: date, lookback_days: int) -> RefreshRollupsInput:
    """Range covering today and the previous lookback_days days."""
    return RefreshRollupsInput(from_date=today - timedelta(days=lookback_days), to_date=today)
