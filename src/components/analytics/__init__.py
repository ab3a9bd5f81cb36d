"""
Analytics component - Event ingestion, read-state reconciliation and rollups.
"""

from ._events import DEFAULT_ENABLED_EVENTS, KNOWN_EVENTS, EventKind, parse_enabled_events
from ._filter import is_likely_bot_user_agent, should_accept
from ._flag import AnalyticsFlagCache
from ._memory import InMemoryAnalyticsStore
from ._normalize import EventNormalizer, NormalizerConfig
from ._rate_limit import AnalyticsRateLimiter, LocalCounterFallback
from ._reconcile import ReadStateReconciler, apply_event, fold_events
from ._rollup import RollupEngine, compute_percentile
from ._session import (
    SESSION_COOKIE_NAME,
    SESSION_MAX_AGE_SECONDS,
    SessionIdentityService,
    resolve_salt,
)
from ._user_agent import classify
from .component import (
    clamp_lookback_days,
    lookback_input,
    run_ingest,
    run_refresh,
)
from .models import (
    AnalyticsValidationError,
    IngestBatchInput,
    IngestOutput,
    IngestPolicy,
    PageRollup,
    RawEvent,
    ReadState,
    ReferrerRollup,
    RefreshRollupsInput,
    RefreshRollupsOutput,
    RequestContext,
    UaRollup,
)
from .ports import (
    AnalyticsStorePort,
    CounterStoreError,
    CounterStorePort,
    TimePort,
)

__all__ = [
    # Entry points
    "run_ingest",
    "run_refresh",
    "clamp_lookback_days",
    "lookback_input",
    # Input models
    "IngestBatchInput",
    "IngestPolicy",
    "RefreshRollupsInput",
    "RequestContext",
    # Output models
    "AnalyticsValidationError",
    "IngestOutput",
    "PageRollup",
    "RawEvent",
    "ReadState",
    "ReferrerRollup",
    "RefreshRollupsOutput",
    "UaRollup",
    # Ports
    "AnalyticsStorePort",
    "CounterStoreError",
    "CounterStorePort",
    "TimePort",
    # Services
    "AnalyticsFlagCache",
    "AnalyticsRateLimiter",
    "EventNormalizer",
    "LocalCounterFallback",
    "NormalizerConfig",
    "ReadStateReconciler",
    "RollupEngine",
    "SessionIdentityService",
    # Helpers
    "DEFAULT_ENABLED_EVENTS",
    "KNOWN_EVENTS",
    "SESSION_COOKIE_NAME",
    "SESSION_MAX_AGE_SECONDS",
    "EventKind",
    "apply_event",
    "classify",
    "compute_percentile",
    "fold_events",
    "is_likely_bot_user_agent",
    "parse_enabled_events",
    "resolve_salt",
    "should_accept",
    # In-memory
    "InMemoryAnalyticsStore",
]
