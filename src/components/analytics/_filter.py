"""
Bot and consent filter.

Decides whether a request may contribute analytics at all. Every rejection
is silent: the endpoint answers 204 so instrumentation never surfaces
analytics failures to readers.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

from .models import FilterDecision, RequestContext

BOT_USER_AGENT_PATTERN = re.compile(
    r"(bot|crawler|spider|crawling|facebookexternalhit|slurp|pingdom|preview|insights"
    r"|headless|phantomjs|playwright|puppeteer|selenium|webdriver)",
    re.IGNORECASE,
)

DISALLOWED_UA_PREFIXES: tuple[str, ...] = (
    "axios/",
    "node-fetch/",
    "python-requests/",
    "curl/",
    "wget/",
)


def is_likely_bot_user_agent(user_agent: str | None) -> bool:
    """Check a User-Agent against bot and automation patterns."""
    if not user_agent:
        return False
    value = user_agent.strip()
    if not value:
        return False
    if BOT_USER_AGENT_PATTERN.search(value):
        return True
    lowered = value.lower()
    return any(lowered.startswith(prefix) for prefix in DISALLOWED_UA_PREFIXES)


def has_privacy_signal(headers: Mapping[str, str]) -> bool:
    """Do-Not-Track or Global Privacy Control present."""
    return headers.get("dnt") == "1" or headers.get("sec-gpc") == "1"


def is_allowed_origin(
    origin: str | None,
    request_origin: str | None,
    allowed_origins: Iterable[str],
) -> bool:
    """
    Check the Origin header against the allow-list.

    An empty allow-list accepts everything (same-origin deployments).
    """
    allowed = set(allowed_origins)
    if not allowed:
        return True
    if origin and origin in allowed:
        return True
    return bool(request_origin and request_origin in allowed)


def declares_automation(candidates: Iterable[Any]) -> bool:
    """Any event in the batch reports navigator.webdriver."""
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        flags = candidate.get("flags")
        if isinstance(flags, dict) and flags.get("webdriver") is True:
            return True
    return False


def should_accept(
    ctx: RequestContext,
    allowed_origins: Iterable[str] = (),
    session_cookie: str | None = None,
) -> FilterDecision:
    """
    Run origin, consent, bot, session and operator checks in order.

    ``session_cookie`` names the cookie that must be present; None skips the
    check.
    """
    headers = ctx.headers

    if not is_allowed_origin(headers.get("origin"), ctx.request_origin, allowed_origins):
        return FilterDecision(accepted=False, reason="origin_not_allowed")

    if has_privacy_signal(headers):
        return FilterDecision(accepted=False, reason="do_not_track")

    if is_likely_bot_user_agent(headers.get("user-agent")):
        return FilterDecision(accepted=False, reason="bot")

    if session_cookie is not None and not ctx.cookies.get(session_cookie):
        return FilterDecision(accepted=False, reason="no_session")

    if ctx.is_admin:
        return FilterDecision(accepted=False, reason="admin")

    return FilterDecision(accepted=True)
