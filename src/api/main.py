import logging
import sys
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response

from src.api.deps import AnalyticsServices, Settings, build_analytics_services, get_settings
from src.app_shell.config import validate_ops_rules
from src.components.analytics._session import is_valid_token
from src.rules.loader import apply_env_overrides, load_rules

logger = logging.getLogger(__name__)


def _startup(settings: Settings) -> AnalyticsServices:
    """Load rules, validate the environment and wire analytics (fail-fast)."""
    try:
        rules = load_rules(settings.rules_path)
    except (FileNotFoundError, ValueError) as e:
        logger.critical("Rules load failed: %s", e)
        sys.exit(1)

    validate_ops_rules(rules, settings.data_dir, settings.environment)
    logger.info("Rules loaded from %s", settings.rules_path)

    return build_analytics_services(settings, apply_env_overrides(rules.analytics))


def create_app(
    settings: Settings | None = None,
    services: AnalyticsServices | None = None,
) -> FastAPI:
    """
    Build the API application.

    Passing services skips startup wiring (tests inject in-memory stores).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        owned = services or _startup(settings or get_settings())
        app.state.analytics = owned
        if owned.scheduler is not None:
            owned.scheduler.start()

        yield

        owned.close()

    app = FastAPI(
        title="Blog Analytics API",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # --- Routers ---
    from src.api.routes import admin_analytics, analytics_ingest

    app.include_router(analytics_ingest.router, prefix="/api/analytics", tags=["Analytics"])
    app.include_router(admin_analytics.cron_router, prefix="/api/cron", tags=["Cron"])
    app.include_router(
        admin_analytics.router, prefix="/api/admin/analytics", tags=["Admin Analytics"]
    )

    @app.middleware("http")
    async def issue_session_cookie(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Give page requests a session cookie so the collector can read it."""
        response = await call_next(request)

        if request.method != "GET" or request.url.path.startswith("/api/"):
            return response

        analytics: AnalyticsServices | None = getattr(request.app.state, "analytics", None)
        if analytics is None:
            return response

        sessions = analytics.sessions
        if is_valid_token(request.cookies.get(sessions.cookie_name)):
            return response

        cookie = sessions.cookie_for(sessions.ensure_session(None))
        response.set_cookie(
            key=cookie.name,
            value=cookie.value,
            max_age=cookie.max_age,
            httponly=cookie.httponly,
            samesite=cookie.samesite,  # type: ignore[arg-type]
            secure=cookie.secure,
            path="/",
        )
        return response

    @app.get("/health")
    def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {"status": "ok", "service": "analytics"}

    return app


app = create_app()
