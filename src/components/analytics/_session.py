"""
Anonymous session identity.

The raw token lives only in the visitor's cookie. Everything persisted uses
the salted HMAC of it.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import uuid
from dataclasses import dataclass

from .models import SessionIssue

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "da_session"
SESSION_MAX_AGE_SECONDS = 60 * 60 * 24 * 180  # 180 days
FALLBACK_SALT = "blog-analytics-salt"

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


@dataclass(frozen=True)
class SessionCookieSpec:
    """Attributes for the session cookie."""

    name: str
    value: str
    max_age: int
    httponly: bool
    samesite: str
    secure: bool


def resolve_salt(*candidates: str | None) -> str:
    """
    Pick the first non-blank salt candidate.

    Falls back to a fixed salt with a warning: analytics keeps working but
    session hashes become predictable across deployments.
    """
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()

    logger.warning("Analytics session salt not configured; using insecure fallback")
    return FALLBACK_SALT


def generate_session_token() -> str:
    """Generate a new opaque session token."""
    return uuid.uuid4().hex


def is_valid_token(value: str | None) -> bool:
    """Check token shape (opaque, URL-safe, bounded length)."""
    return bool(value) and _TOKEN_PATTERN.match(value or "") is not None


class SessionIdentityService:
    """Issues session tokens and derives the persisted session hash."""

    def __init__(
        self,
        salt: str,
        cookie_name: str = SESSION_COOKIE_NAME,
        max_age_seconds: int = SESSION_MAX_AGE_SECONDS,
        secure_cookies: bool = False,
    ) -> None:
        self._salt = salt.encode()
        self._network_salt = f"{salt}::network".encode()
        self.cookie_name = cookie_name
        self.max_age_seconds = max_age_seconds
        self.secure_cookies = secure_cookies

    def ensure_session(self, existing_cookie: str | None) -> SessionIssue:
        """Return the existing token, or a new one if none is valid."""
        if existing_cookie and is_valid_token(existing_cookie):
            return SessionIssue(token=existing_cookie, is_new=False)
        return SessionIssue(token=generate_session_token(), is_new=True)

    def cookie_for(self, issue: SessionIssue) -> SessionCookieSpec:
        """Cookie attributes the caller must set for a new session."""
        return SessionCookieSpec(
            name=self.cookie_name,
            value=issue.token,
            max_age=self.max_age_seconds,
            httponly=True,
            samesite="lax",
            secure=self.secure_cookies,
        )

    def hash_session(self, token: str) -> str:
        """HMAC-SHA256 of the token, hex encoded."""
        return hmac.new(self._salt, token.encode(), hashlib.sha256).hexdigest()

    def anonymize_network_identifier(self, value: str | None) -> str | None:
        """Truncated salted hash of an IP address."""
        if not value:
            return None
        digest = hmac.new(self._network_salt, value.encode(), hashlib.sha256).hexdigest()
        return digest[:32]
