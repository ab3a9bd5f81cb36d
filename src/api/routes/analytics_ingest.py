"""
Analytics Collector API Route.

Public endpoint that accepts batched behavioral events from the browser.

Responses:
- 202 {"accepted": n} when at least one event was stored
- 204 for everything else (disabled, filtered, invalid, rate limited,
  storage failure); analytics never surfaces errors to readers
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from src.api.auth_utils import is_admin_request
from src.api.deps import AnalyticsServices, get_analytics
from src.components.analytics import (
    IngestBatchInput,
    IngestOutput,
    RequestContext,
    run_ingest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_client_ip(request: Request) -> str | None:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def build_request_context(request: Request) -> RequestContext:
    headers = {key.lower(): value for key, value in request.headers.items()}
    cookies = dict(request.cookies)
    return RequestContext(
        headers=headers,
        cookies=cookies,
        request_origin=f"{request.url.scheme}://{request.url.netloc}",
        client_ip=get_client_ip(request),
        is_admin=is_admin_request(cookies, headers),
    )


def _ingest(body: bytes, ctx: RequestContext, services: AnalyticsServices) -> IngestOutput:
    return run_ingest(
        IngestBatchInput(body=body, context=ctx),
        store=services.store,
        sessions=services.sessions,
        rate_limiter=services.rate_limiter,
        normalizer=services.normalizer,
        time_port=services.time_port,
        flag=services.flag,
        policy=services.policy,
    )


@router.post(
    "/collect",
    status_code=202,
    responses={
        202: {"description": "Events accepted"},
        204: {"description": "Nothing stored"},
    },
)
async def collect(
    request: Request,
    services: AnalyticsServices = Depends(get_analytics),
) -> Response:
    """Ingest a batch of analytics events."""
    body = await request.body()
    ctx = build_request_context(request)

    try:
        result = await run_in_threadpool(_ingest, body, ctx, services)
    except Exception:
        logger.exception("Analytics ingestion failed")
        return Response(status_code=204)

    if result.status_code == 202:
        return JSONResponse(status_code=202, content={"accepted": result.accepted})
    return Response(status_code=204)
