import random
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.adapters.sqlite.migrator import SQLiteMigrator
from src.api.auth_utils import create_access_token
from src.api.deps import AnalyticsServices, Settings, build_analytics_services
from src.api.main import create_app
from src.components.analytics import InMemoryAnalyticsStore
from src.rules.models import AnalyticsRules

PROJECT_ROOT = Path(__file__).resolve().parents[1]
MIGRATIONS_DIR = PROJECT_ROOT / "migrations"
SESSION_TOKEN = "a1b2c3d4e5f60718293a4b5c6d7e8f90"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class MockTimePort:
    """Controllable clock for deterministic windows."""

    def __init__(self, now: datetime | None = None):
        self._now = now or datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC)

    def now_utc(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)

    def set(self, now: datetime) -> None:
        self._now = now


@pytest.fixture
def clock() -> MockTimePort:
    return MockTimePort()


@pytest.fixture
def memory_store() -> InMemoryAnalyticsStore:
    return InMemoryAnalyticsStore()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Temporary SQLite database with all migrations applied."""
    path = str(tmp_path / "analytics.db")
    SQLiteMigrator(path, str(MIGRATIONS_DIR)).run_migrations()
    return path


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.setenv("BLOG_ENV", "test")
    monkeypatch.setenv("BLOG_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("ANALYTICS_SESSION_SALT", "test-salt")
    for name in ("ANALYTICS_REDIS_URL", "ANALYTICS_CRON_SECRET", "CRON_SECRET"):
        monkeypatch.delenv(name, raising=False)
    return Settings()


@pytest.fixture
def analytics_rules() -> AnalyticsRules:
    return AnalyticsRules()


@pytest.fixture
def services(
    settings: Settings,
    analytics_rules: AnalyticsRules,
    memory_store: InMemoryAnalyticsStore,
    clock: MockTimePort,
) -> AnalyticsServices:
    return build_analytics_services(
        settings,
        analytics_rules,
        store=memory_store,
        time_port=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def app(services: AnalyticsServices) -> FastAPI:
    return create_app(services=services)


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_token() -> str:
    return create_access_token({"sub": "admin-1", "role": "admin"}, timedelta(hours=1))


@pytest.fixture
def reader_token() -> str:
    return create_access_token({"sub": "reader-1", "role": "viewer"}, timedelta(hours=1))
