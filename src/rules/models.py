from pydantic import BaseModel, Field

from src.components.analytics import DEFAULT_ENABLED_EVENTS


class ProjectRules(BaseModel):
    slug: str
    rules_version: str


class IngestRules(BaseModel):
    enabled_events: list[str] = Field(default_factory=lambda: list(DEFAULT_ENABLED_EVENTS))
    allowed_origins: list[str] = Field(default_factory=list)
    max_events_per_request: int = Field(default=25, ge=1, le=100)
    max_event_bytes: int = Field(default=4096, ge=512, le=16384)
    read_progress_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    max_future_seconds: int = Field(default=600, ge=0)
    max_past_seconds: int = Field(default=30 * 24 * 60 * 60, ge=0)


class RateLimitRules(BaseModel):
    window_seconds: int = Field(default=60, ge=10, le=3600)
    max_events: int = Field(default=120, ge=1, le=10000)


class SessionCookieRules(BaseModel):
    cookie_name: str = "da_session"
    max_age_days: int = Field(default=180, ge=1)


class RetentionRules(BaseModel):
    days: int = Field(default=60, ge=1)


class RollupRules(BaseModel):
    scheduler_enabled: bool = False
    interval_seconds: int = Field(default=900, ge=10)
    lookback_days: int = Field(default=3, ge=1, le=30)


class FlagRules(BaseModel):
    cache_ttl_seconds: int = Field(default=60, ge=0)
    default_enabled: bool = True


class AnalyticsRules(BaseModel):
    ingest: IngestRules = Field(default_factory=IngestRules)
    rate_limit: RateLimitRules = Field(default_factory=RateLimitRules)
    session: SessionCookieRules = Field(default_factory=SessionCookieRules)
    retention: RetentionRules = Field(default_factory=RetentionRules)
    rollups: RollupRules = Field(default_factory=RollupRules)
    flag: FlagRules = Field(default_factory=FlagRules)


class OpsRules(BaseModel):
    data_dir_required: bool = True
    required_env: list[str] = Field(default_factory=list)
    required_env_in_production: list[str] = Field(default_factory=lambda: ["BLOG_SECRET_KEY"])


class Rules(BaseModel):
    project: ProjectRules
    analytics: AnalyticsRules = Field(default_factory=AnalyticsRules)
    ops: OpsRules = Field(default_factory=OpsRules)
