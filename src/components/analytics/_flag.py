"""
Analytics on/off flag with a short-lived cache.

The flag lives in the settings store under ``analytics_enabled``. Readers may
see a stale value for up to ``ttl_seconds`` after another process changes it;
writes through this object invalidate the local cache immediately.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import Lock

from .ports import SettingsStorePort, TimePort

logger = logging.getLogger(__name__)

FLAG_KEY = "analytics_enabled"
DEFAULT_TTL_SECONDS = 60

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_flag(raw: str | None, default: bool = True) -> bool:
    """Interpret a stored flag value; unknown or missing means default."""
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


class AnalyticsFlagCache:
    """Cached reader/writer for the analytics enabled flag."""

    def __init__(
        self,
        store: SettingsStorePort,
        time_port: TimePort,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        default: bool = True,
    ) -> None:
        self._store = store
        self._time = time_port
        self._ttl = timedelta(seconds=max(0, ttl_seconds))
        self._default = default
        self._value: bool | None = None
        self._expires_at: datetime | None = None
        self._lock = Lock()

    def is_enabled(self) -> bool:
        """Current flag value, refreshed from the store when the cache expires."""
        now = self._time.now_utc()
        with self._lock:
            if (
                self._value is not None
                and self._expires_at is not None
                and now < self._expires_at
            ):
                return self._value

        value = parse_flag(self._store.get_setting(FLAG_KEY), self._default)

        with self._lock:
            self._value = value
            self._expires_at = now + self._ttl
        return value

    def set_enabled(self, enabled: bool) -> bool:
        """Persist a new value and drop the cached one."""
        self._store.set_setting(FLAG_KEY, "true" if enabled else "false")
        self.invalidate()
        logger.info("Analytics %s", "enabled" if enabled else "disabled")
        return enabled

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._expires_at = None
