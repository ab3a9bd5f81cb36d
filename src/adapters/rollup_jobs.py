"""
Rollup Scheduler Adapter.

In-process background scheduler that refreshes analytics rollups for a
trailing window of days at a fixed interval. Deployments that use an external
cron hit the protected trigger endpoint instead and leave this disabled.

Key behaviors:
- Runs in a daemon thread; stop() waits briefly for the loop to exit
- A failed refresh is logged and retried on the next tick
- trigger_now() runs one refresh synchronously (tests, CLI)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from src.components.analytics import (
    AnalyticsStorePort,
    RefreshRollupsOutput,
    TimePort,
    lookback_input,
    run_refresh,
)

logger = logging.getLogger(__name__)


class RollupScheduler:
    """
    Rollup scheduler with background polling.

    Each tick recomputes today and the previous lookback_days days.
    """

    def __init__(
        self,
        store: AnalyticsStorePort,
        time_port: TimePort,
        interval_seconds: float = 900.0,
        lookback_days: int = 3,
        retention_days: int = 60,
        refresh: Callable[..., RefreshRollupsOutput] = run_refresh,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            store: Analytics store to read from and write rollups to
            time_port: Clock used to pick the window
            interval_seconds: Interval between refreshes
            lookback_days: Days before today to recompute on each tick
            retention_days: Raw event and read state retention
            refresh: Refresh entry point (injected for tests)
        """
        self._store = store
        self._time = time_port
        self._interval = interval_seconds
        self._lookback_days = lookback_days
        self._retention_days = retention_days
        self._refresh = refresh
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False

    def start(self) -> None:
        """Start the background scheduler."""
        if self._running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop, name="analytics-rollups", daemon=True
        )
        self._thread.start()
        self._running = True
        logger.info("Rollup scheduler started (interval: %.1fs)", self._interval)

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
        self._running = False
        logger.info("Rollup scheduler stopped")

    def trigger_now(self) -> RefreshRollupsOutput:
        """Run one refresh immediately."""
        today = self._time.now_utc().date()
        return self._refresh(
            lookback_input(today, self._lookback_days),
            store=self._store,
            time_port=self._time,
            retention_days=self._retention_days,
        )

    @property
    def is_running(self) -> bool:
        """Check if scheduler is active."""
        return self._running

    def _poll_loop(self) -> None:
        """Background polling loop."""
        while not self._stop_event.wait(timeout=self._interval):
            try:
                result = self.trigger_now()
                logger.info(
                    "Scheduled rollup refresh covered %d days (%s..%s)",
                    len(result.days),
                    result.days[0].isoformat() if result.days else "-",
                    result.days[-1].isoformat() if result.days else "-",
                )
            except Exception:
                logger.exception("Error in rollup scheduler loop")
