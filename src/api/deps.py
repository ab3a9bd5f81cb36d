from __future__ import annotations

import os
import random
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from fastapi import Request

from src.adapters.clock import SystemClock
from src.adapters.redis_counter import RedisCounterStore
from src.adapters.rollup_jobs import RollupScheduler
from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import SQLiteAnalyticsStore
from src.components.analytics import (
    AnalyticsFlagCache,
    AnalyticsRateLimiter,
    AnalyticsStorePort,
    CounterStorePort,
    EventNormalizer,
    IngestPolicy,
    NormalizerConfig,
    SessionIdentityService,
    TimePort,
    clamp_lookback_days,
    parse_enabled_events,
    resolve_salt,
)
from src.rules.models import AnalyticsRules

PROJECT_ROOT = Path(__file__).resolve().parents[2]


# --- Settings ---
class Settings:
    def __init__(self) -> None:
        self.environment = os.environ.get("BLOG_ENV", "development")
        self.data_dir = Path(os.environ.get("BLOG_DATA_DIR", "./data"))
        self.db_path = str(self.data_dir / "analytics.db")
        self.rules_path = Path(os.environ.get("BLOG_RULES_PATH", PROJECT_ROOT / "rules.yaml"))
        self.migrations_dir = Path(
            os.environ.get("BLOG_MIGRATIONS_DIR", PROJECT_ROOT / "migrations")
        )
        self.secret_key = os.environ.get("BLOG_SECRET_KEY")
        self.session_salt = os.environ.get("ANALYTICS_SESSION_SALT")
        self.redis_url = os.environ.get("ANALYTICS_REDIS_URL") or None
        self.cron_secret = (
            os.environ.get("ANALYTICS_CRON_SECRET") or os.environ.get("CRON_SECRET") or None
        )
        self.cron_lookback_days = clamp_lookback_days(
            os.environ.get("ANALYTICS_CRON_LOOKBACK_DAYS")
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()


# --- Analytics services ---
@dataclass
class AnalyticsServices:
    """Process-owned analytics collaborators, built once per app lifespan."""

    settings: Settings
    rules: AnalyticsRules
    store: AnalyticsStorePort
    time_port: TimePort
    sessions: SessionIdentityService
    rate_limiter: AnalyticsRateLimiter
    normalizer: EventNormalizer
    flag: AnalyticsFlagCache
    policy: IngestPolicy
    scheduler: RollupScheduler | None = None
    counter_store: RedisCounterStore | None = None

    def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.counter_store is not None:
            self.counter_store.close()


def build_analytics_services(
    settings: Settings,
    rules: AnalyticsRules,
    *,
    store: AnalyticsStorePort | None = None,
    time_port: TimePort | None = None,
    counter_store: CounterStorePort | None = None,
    rng: random.Random | None = None,
) -> AnalyticsServices:
    """
    Wire the analytics component from settings and rules.

    Without an injected store the SQLite database is migrated and used.
    Without an injected counter store Redis is used when configured.
    """
    clock = time_port or SystemClock()

    if store is None:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        SQLiteMigrator(settings.db_path, str(settings.migrations_dir)).run_migrations()
        store = SQLiteAnalyticsStore(settings.db_path)

    redis_store: RedisCounterStore | None = None
    if counter_store is None and settings.redis_url:
        redis_store = RedisCounterStore.from_url(settings.redis_url)
        counter_store = redis_store

    sessions = SessionIdentityService(
        salt=resolve_salt(settings.session_salt, settings.secret_key),
        cookie_name=rules.session.cookie_name,
        max_age_seconds=rules.session.max_age_days * 24 * 60 * 60,
        secure_cookies=settings.is_production,
    )

    normalizer = EventNormalizer(
        NormalizerConfig(
            enabled_events=parse_enabled_events(rules.ingest.enabled_events),
            read_progress_sample_rate=rules.ingest.read_progress_sample_rate,
            max_events_per_request=rules.ingest.max_events_per_request,
            max_event_bytes=rules.ingest.max_event_bytes,
            max_future_seconds=rules.ingest.max_future_seconds,
            max_past_seconds=rules.ingest.max_past_seconds,
        ),
        rng=rng,
    )

    scheduler = None
    if rules.rollups.scheduler_enabled:
        scheduler = RollupScheduler(
            store,
            clock,
            interval_seconds=rules.rollups.interval_seconds,
            lookback_days=rules.rollups.lookback_days,
            retention_days=rules.retention.days,
        )

    return AnalyticsServices(
        settings=settings,
        rules=rules,
        store=store,
        time_port=clock,
        sessions=sessions,
        rate_limiter=AnalyticsRateLimiter(clock, counter_store),
        normalizer=normalizer,
        flag=AnalyticsFlagCache(
            store,
            clock,
            ttl_seconds=rules.flag.cache_ttl_seconds,
            default=rules.flag.default_enabled,
        ),
        policy=IngestPolicy(
            allowed_origins=frozenset(rules.ingest.allowed_origins),
            rate_limit_window_seconds=rules.rate_limit.window_seconds,
            rate_limit_max_events=rules.rate_limit.max_events,
        ),
        scheduler=scheduler,
        counter_store=redis_store,
    )


def get_analytics(request: Request) -> AnalyticsServices:
    """Analytics services owned by the running app."""
    services: AnalyticsServices = request.app.state.analytics
    return services
