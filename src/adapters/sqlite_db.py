"""
SQLite analytics store.

Implements AnalyticsStorePort on SQLite. Timestamps are stored as fixed-width
UTC ISO strings so range filters can compare them as text; calendar days are
stored as ISO dates.

Read-state updates take a write lock up front (BEGIN IMMEDIATE) so two
writers folding into the same (session, path) serialize instead of losing an
update. Each rollup day is deleted and re-inserted in one transaction.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime
from typing import Any

from src.components.analytics._events import EventKind
from src.components.analytics.models import (
    PageRollup,
    RawEvent,
    ReadState,
    ReferrerRollup,
    UaRollup,
    Viewport,
)

UNKNOWN = "unknown"
BUSY_TIMEOUT_SECONDS = 30.0

# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert SQLite row to dictionary."""
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def format_dt(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO string."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_dt(s: str | None) -> datetime | None:
    """Parse ISO datetime string."""
    return datetime.fromisoformat(s) if s else None


def _bool(value: Any) -> bool | None:
    return None if value is None else bool(value)


# -----------------------------------------------------------------------------
# Base SQLite Repository
# -----------------------------------------------------------------------------


class SQLiteRepoBase:
    """Base class for SQLite repositories."""

    def __init__(self, db_path: str, connection: sqlite3.Connection | None = None):
        self.db_path = db_path
        self._external_conn = connection

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection (uses external if provided)."""
        if self._external_conn is not None:
            return self._external_conn

        conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = dict_factory
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _should_close(self) -> bool:
        """Whether to close connection after use."""
        return self._external_conn is None

    def _close(self, conn: sqlite3.Connection) -> None:
        if self._should_close():
            conn.close()


# -----------------------------------------------------------------------------
# Analytics Store
# -----------------------------------------------------------------------------


class SQLiteAnalyticsStore(SQLiteRepoBase):
    """SQLite implementation of AnalyticsStorePort."""

    # --- Raw events ---

    def insert_events(self, events: Iterable[RawEvent]) -> int:
        rows = [self._event_params(e) for e in events]
        if not rows:
            return 0

        conn = self._get_conn()
        try:
            conn.executemany(
                """
                INSERT INTO analytics_events_raw (
                    name, session, client_ts, server_ts, path, referrer, title,
                    device_type, os, browser, progress_bucket, ip_hash,
                    viewport_width, viewport_height, data_json, is_sampled
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            self._close(conn)
        return len(rows)

    def list_events(self) -> list[RawEvent]:
        """All raw events in insertion order."""
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM analytics_events_raw ORDER BY id").fetchall()
            return [self._map_event(row) for row in rows]
        finally:
            self._close(conn)

    def count_views_by_path(self, start: datetime, end: datetime) -> dict[str, int]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT path, COUNT(*) AS views
                FROM analytics_events_raw
                WHERE name = ? AND server_ts >= ? AND server_ts < ?
                GROUP BY path
                """,
                (EventKind.PAGE_VIEW.value, format_dt(start), format_dt(end)),
            ).fetchall()
            return {row["path"]: row["views"] for row in rows}
        finally:
            self._close(conn)

    def count_by_referrer(
        self, start: datetime, end: datetime
    ) -> list[tuple[str | None, int, int]]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT referrer, COUNT(*) AS views, COUNT(DISTINCT session) AS sessions
                FROM analytics_events_raw
                WHERE name = ? AND server_ts >= ? AND server_ts < ?
                GROUP BY referrer
                """,
                (EventKind.PAGE_VIEW.value, format_dt(start), format_dt(end)),
            ).fetchall()
            return [(row["referrer"], row["views"], row["sessions"]) for row in rows]
        finally:
            self._close(conn)

    def count_by_user_agent(
        self, start: datetime, end: datetime
    ) -> list[tuple[str, str, str, int, int]]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT
                    IFNULL(device_type, ?) AS device_type,
                    IFNULL(os, ?) AS os,
                    IFNULL(browser, ?) AS browser,
                    COUNT(*) AS views,
                    COUNT(DISTINCT session) AS sessions
                FROM analytics_events_raw
                WHERE name = ? AND server_ts >= ? AND server_ts < ?
                GROUP BY 1, 2, 3
                """,
                (
                    UNKNOWN,
                    UNKNOWN,
                    UNKNOWN,
                    EventKind.PAGE_VIEW.value,
                    format_dt(start),
                    format_dt(end),
                ),
            ).fetchall()
            return [
                (row["device_type"], row["os"], row["browser"], row["views"], row["sessions"])
                for row in rows
            ]
        finally:
            self._close(conn)

    # --- Read state ---

    def get_read_state(self, session: str, path: str) -> ReadState | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM analytics_read_state WHERE session = ? AND path = ?",
                (session, path),
            ).fetchone()
            return self._map_read_state(row) if row else None
        finally:
            self._close(conn)

    def update_read_state(
        self,
        session: str,
        path: str,
        apply: Callable[[ReadState | None], ReadState],
    ) -> ReadState:
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM analytics_read_state WHERE session = ? AND path = ?",
                (session, path),
            ).fetchone()
            updated = apply(self._map_read_state(row) if row else None)
            conn.execute(
                """
                INSERT INTO analytics_read_state (
                    session, path, progress_max, completed, first_at, last_at,
                    time_active_ms, last_focus_ts, in_focus, referrer,
                    device_type, os, browser, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session, path) DO UPDATE SET
                    progress_max = excluded.progress_max,
                    completed = excluded.completed,
                    first_at = excluded.first_at,
                    last_at = excluded.last_at,
                    time_active_ms = excluded.time_active_ms,
                    last_focus_ts = excluded.last_focus_ts,
                    in_focus = excluded.in_focus,
                    referrer = excluded.referrer,
                    device_type = excluded.device_type,
                    os = excluded.os,
                    browser = excluded.browser,
                    updated_at = excluded.updated_at
                """,
                (
                    session,
                    path,
                    updated.progress_max,
                    int(updated.completed),
                    format_dt(updated.first_at),
                    format_dt(updated.last_at),
                    updated.time_active_ms,
                    format_dt(updated.last_focus_ts),
                    int(updated.in_focus),
                    updated.referrer,
                    updated.device_type,
                    updated.os,
                    updated.browser,
                    format_dt(updated.updated_at),
                ),
            )
            conn.commit()
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            self._close(conn)

    def list_read_states(self, start: datetime, end: datetime) -> list[ReadState]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM analytics_read_state
                WHERE last_at >= ? AND last_at < ?
                ORDER BY path, session
                """,
                (format_dt(start), format_dt(end)),
            ).fetchall()
            return [self._map_read_state(row) for row in rows]
        finally:
            self._close(conn)

    # --- Rollups ---

    def replace_rollups(
        self,
        day: date,
        pages: list[PageRollup],
        referrers: list[ReferrerRollup],
        user_agents: list[UaRollup],
    ) -> None:
        day_key = day.isoformat()
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM analytics_page_rollups_daily WHERE day = ?", (day_key,))
            conn.execute("DELETE FROM analytics_referrer_rollups_daily WHERE day = ?", (day_key,))
            conn.execute("DELETE FROM analytics_ua_rollups_daily WHERE day = ?", (day_key,))

            conn.executemany(
                """
                INSERT INTO analytics_page_rollups_daily (
                    path, day, views, sessions, time_active_avg_ms,
                    time_active_median_ms, time_active_p95_ms, completion_rate, funnel_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        p.path,
                        day_key,
                        p.views,
                        p.sessions,
                        p.time_active_avg_ms,
                        p.time_active_median_ms,
                        p.time_active_p95_ms,
                        p.completion_rate,
                        json.dumps(p.funnel, sort_keys=True),
                    )
                    for p in pages
                ],
            )
            conn.executemany(
                """
                INSERT INTO analytics_referrer_rollups_daily (referrer, day, views, sessions)
                VALUES (?, ?, ?, ?)
                """,
                [(r.referrer, day_key, r.views, r.sessions) for r in referrers],
            )
            conn.executemany(
                """
                INSERT INTO analytics_ua_rollups_daily (
                    device_type, os, browser, day, views, sessions
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(u.device_type, u.os, u.browser, day_key, u.views, u.sessions) for u in user_agents],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._close(conn)

    def list_page_rollups(self, start: date, end: date) -> list[PageRollup]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM analytics_page_rollups_daily
                WHERE day >= ? AND day <= ?
                ORDER BY day, path
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
            return [
                PageRollup(
                    path=row["path"],
                    day=date.fromisoformat(row["day"]),
                    views=row["views"],
                    sessions=row["sessions"],
                    time_active_avg_ms=row["time_active_avg_ms"],
                    time_active_median_ms=row["time_active_median_ms"],
                    time_active_p95_ms=row["time_active_p95_ms"],
                    completion_rate=row["completion_rate"],
                    funnel=json.loads(row["funnel_json"]),
                )
                for row in rows
            ]
        finally:
            self._close(conn)

    def list_referrer_rollups(self, start: date, end: date) -> list[ReferrerRollup]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM analytics_referrer_rollups_daily
                WHERE day >= ? AND day <= ?
                ORDER BY day, referrer IS NOT NULL, IFNULL(referrer, '')
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
            return [
                ReferrerRollup(
                    referrer=row["referrer"],
                    day=date.fromisoformat(row["day"]),
                    views=row["views"],
                    sessions=row["sessions"],
                )
                for row in rows
            ]
        finally:
            self._close(conn)

    def list_ua_rollups(self, start: date, end: date) -> list[UaRollup]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM analytics_ua_rollups_daily
                WHERE day >= ? AND day <= ?
                ORDER BY day, device_type, os, browser
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
            return [
                UaRollup(
                    device_type=row["device_type"],
                    os=row["os"],
                    browser=row["browser"],
                    day=date.fromisoformat(row["day"]),
                    views=row["views"],
                    sessions=row["sessions"],
                )
                for row in rows
            ]
        finally:
            self._close(conn)

    # --- Settings ---

    def get_setting(self, key: str) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT value FROM analytics_settings WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None
        finally:
            self._close(conn)

    def set_setting(self, key: str, value: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO analytics_settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()
        finally:
            self._close(conn)

    # --- Retention ---

    def purge_expired(
        self,
        events_before: datetime,
        read_states_before: datetime,
    ) -> tuple[int, int]:
        conn = self._get_conn()
        try:
            events = conn.execute(
                "DELETE FROM analytics_events_raw WHERE server_ts < ?",
                (format_dt(events_before),),
            ).rowcount
            states = conn.execute(
                "DELETE FROM analytics_read_state WHERE last_at < ?",
                (format_dt(read_states_before),),
            ).rowcount
            conn.commit()
            return events, states
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            self._close(conn)

    # --- Mapping ---

    def _event_params(self, event: RawEvent) -> tuple[Any, ...]:
        return (
            event.name,
            event.session,
            format_dt(event.client_ts),
            format_dt(event.server_ts),
            event.path,
            event.referrer,
            event.title,
            event.device_type,
            event.os,
            event.browser,
            event.progress_bucket,
            event.ip_hash,
            event.viewport.width if event.viewport else None,
            event.viewport.height if event.viewport else None,
            json.dumps(event.data, sort_keys=True) if event.data is not None else None,
            None if event.is_sampled is None else int(event.is_sampled),
        )

    def _map_event(self, row: dict[str, Any]) -> RawEvent:
        viewport = None
        if row["viewport_width"] is not None or row["viewport_height"] is not None:
            viewport = Viewport(width=row["viewport_width"], height=row["viewport_height"])

        return RawEvent(
            name=row["name"],
            session=row["session"],
            client_ts=parse_dt(row["client_ts"]),  # type: ignore[arg-type]
            server_ts=parse_dt(row["server_ts"]),  # type: ignore[arg-type]
            path=row["path"],
            referrer=row["referrer"],
            title=row["title"],
            device_type=row["device_type"],
            os=row["os"],
            browser=row["browser"],
            progress_bucket=row["progress_bucket"],
            ip_hash=row["ip_hash"],
            viewport=viewport,
            data=json.loads(row["data_json"]) if row["data_json"] else None,
            is_sampled=_bool(row["is_sampled"]),
        )

    def _map_read_state(self, row: dict[str, Any]) -> ReadState:
        return ReadState(
            session=row["session"],
            path=row["path"],
            progress_max=row["progress_max"],
            completed=bool(row["completed"]),
            first_at=parse_dt(row["first_at"]),
            last_at=parse_dt(row["last_at"]),
            time_active_ms=row["time_active_ms"],
            last_focus_ts=parse_dt(row["last_focus_ts"]),
            in_focus=bool(row["in_focus"]),
            referrer=row["referrer"],
            device_type=row["device_type"],
            os=row["os"],
            browser=row["browser"],
            updated_at=parse_dt(row["updated_at"]),
        )
