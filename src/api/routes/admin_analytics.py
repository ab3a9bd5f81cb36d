"""
Admin Analytics API.

- Cron trigger: recompute rollups for a trailing window (bearer secret)
- Toggle: read or flip the analytics enabled flag (admin only)
- Rollup queries: daily page, referrer and device rows (admin only)
"""

from __future__ import annotations

import logging
import secrets
from datetime import date, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.api.auth_utils import is_admin_request
from src.api.deps import AnalyticsServices, get_analytics
from src.components.analytics import lookback_input, run_refresh

logger = logging.getLogger(__name__)

router = APIRouter()
cron_router = APIRouter()

DEFAULT_RANGE_DAYS = 7
MAX_RANGE_DAYS = 366


# --- Response Models ---


class ToggleResponse(BaseModel):
    enabled: bool


class PageRollupItem(BaseModel):
    path: str
    day: date
    views: int
    sessions: int
    time_active_avg_ms: int
    time_active_median_ms: int
    time_active_p95_ms: int
    completion_rate: float
    funnel: dict[str, int]


class ReferrerRollupItem(BaseModel):
    referrer: str | None
    day: date
    views: int
    sessions: int


class DeviceRollupItem(BaseModel):
    device_type: str
    os: str
    browser: str
    day: date
    views: int
    sessions: int


# --- Dependencies ---


def require_admin(request: Request) -> None:
    """Reject callers without an admin or owner token."""
    headers = {key.lower(): value for key, value in request.headers.items()}
    if not is_admin_request(dict(request.cookies), headers):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def cron_authorized(request: Request, services: AnalyticsServices) -> bool:
    """Bearer secret check; without a secret only non-production is allowed."""
    secret = services.settings.cron_secret
    if not secret:
        return not services.settings.is_production

    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer "):
        return False
    token = header[7:].strip()
    return secrets.compare_digest(token.encode(), secret.encode())


def resolve_range(
    start: date | None,
    end: date | None,
    today: date,
) -> tuple[date, date]:
    end = end or today
    start = start or (end - timedelta(days=DEFAULT_RANGE_DAYS - 1))
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    if (end - start).days + 1 > MAX_RANGE_DAYS:
        raise HTTPException(status_code=400, detail=f"Range exceeds {MAX_RANGE_DAYS} days")
    return start, end


# --- Cron Trigger ---


def _refresh(request: Request, services: AnalyticsServices) -> JSONResponse:
    if not cron_authorized(request, services):
        return JSONResponse(status_code=401, content={"ok": False, "error": "Unauthorized"})

    lookback_days = services.settings.cron_lookback_days
    today = services.time_port.now_utc().date()
    inp = lookback_input(today, lookback_days)

    try:
        result = run_refresh(
            inp,
            store=services.store,
            time_port=services.time_port,
            retention_days=services.rules.retention.days,
        )
    except Exception as e:
        logger.exception("Analytics rollup refresh failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})

    return JSONResponse(
        content={
            "ok": True,
            "processed_from": inp.from_date.isoformat(),
            "processed_to": inp.to_date.isoformat(),
            "lookback_days": lookback_days,
            "days": len(result.days),
        }
    )


@cron_router.get("/analytics")
def cron_refresh_get(
    request: Request,
    services: AnalyticsServices = Depends(get_analytics),
) -> JSONResponse:
    """Recompute rollups for the trailing window."""
    return _refresh(request, services)


@cron_router.post("/analytics")
def cron_refresh_post(
    request: Request,
    services: AnalyticsServices = Depends(get_analytics),
) -> JSONResponse:
    """Recompute rollups for the trailing window."""
    return _refresh(request, services)


# --- Toggle ---


@router.get("/toggle", response_model=ToggleResponse, dependencies=[Depends(require_admin)])
def get_toggle(services: AnalyticsServices = Depends(get_analytics)) -> ToggleResponse:
    """Current analytics enabled flag."""
    return ToggleResponse(enabled=services.flag.is_enabled())


@router.post("/toggle", response_model=ToggleResponse, dependencies=[Depends(require_admin)])
async def set_toggle(
    request: Request,
    services: AnalyticsServices = Depends(get_analytics),
) -> ToggleResponse:
    """Enable or disable analytics collection."""
    try:
        payload: Any = await request.json()
    except ValueError:
        payload = None

    enabled = payload.get("enabled") if isinstance(payload, dict) else None
    if not isinstance(enabled, bool):
        raise HTTPException(status_code=400, detail="'enabled' must be a boolean")

    return ToggleResponse(enabled=services.flag.set_enabled(enabled))


# --- Rollup Queries ---


@router.get(
    "/rollups/pages",
    response_model=list[PageRollupItem],
    dependencies=[Depends(require_admin)],
)
def list_page_rollups(
    start: date | None = Query(None),
    end: date | None = Query(None),
    services: AnalyticsServices = Depends(get_analytics),
) -> list[PageRollupItem]:
    """Daily page rollups for a day range."""
    first, last = resolve_range(start, end, services.time_port.now_utc().date())
    return [
        PageRollupItem(
            path=row.path,
            day=row.day,
            views=row.views,
            sessions=row.sessions,
            time_active_avg_ms=row.time_active_avg_ms,
            time_active_median_ms=row.time_active_median_ms,
            time_active_p95_ms=row.time_active_p95_ms,
            completion_rate=row.completion_rate,
            funnel=row.funnel,
        )
        for row in services.store.list_page_rollups(first, last)
    ]


@router.get(
    "/rollups/referrers",
    response_model=list[ReferrerRollupItem],
    dependencies=[Depends(require_admin)],
)
def list_referrer_rollups(
    start: date | None = Query(None),
    end: date | None = Query(None),
    services: AnalyticsServices = Depends(get_analytics),
) -> list[ReferrerRollupItem]:
    """Daily referrer rollups for a day range."""
    first, last = resolve_range(start, end, services.time_port.now_utc().date())
    return [
        ReferrerRollupItem(referrer=row.referrer, day=row.day, views=row.views, sessions=row.sessions)
        for row in services.store.list_referrer_rollups(first, last)
    ]


@router.get(
    "/rollups/devices",
    response_model=list[DeviceRollupItem],
    dependencies=[Depends(require_admin)],
)
def list_device_rollups(
    start: date | None = Query(None),
    end: date | None = Query(None),
    services: AnalyticsServices = Depends(get_analytics),
) -> list[DeviceRollupItem]:
    """Daily device/os/browser rollups for a day range."""
    first, last = resolve_range(start, end, services.time_port.now_utc().date())
    return [
        DeviceRollupItem(
            device_type=row.device_type,
            os=row.os,
            browser=row.browser,
            day=row.day,
            views=row.views,
            sessions=row.sessions,
        )
        for row in services.store.list_ua_rollups(first, last)
    ]
