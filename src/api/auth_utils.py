import os
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from jose import jwt

DEV_SECRET_KEY = "dev-secret-unsafe"
ALGORITHM = "HS256"
ADMIN_ROLES = frozenset({"admin", "owner"})
ACCESS_TOKEN_COOKIE = "access_token"


def get_secret_key() -> str:
    return os.environ.get("BLOG_SECRET_KEY") or DEV_SECRET_KEY


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
    now_utc: datetime | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode in the token
        expires_delta: Optional custom expiration delta
        now_utc: Current UTC time (for testing/determinism). Defaults to datetime.now(UTC).
    """
    to_encode = data.copy()
    current_time = now_utc if now_utc is not None else datetime.now(UTC)

    if expires_delta:
        expire = current_time + expires_delta
    else:
        expire = current_time + timedelta(minutes=15)

    to_encode.update({"exp": expire})
    encoded_jwt: str = jwt.encode(to_encode, get_secret_key(), algorithm=ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(token, get_secret_key(), algorithms=[ALGORITHM])
        return cast(dict[str, Any], payload)
    except jwt.JWTError:
        return None


def extract_token(cookies: Mapping[str, str], headers: Mapping[str, str]) -> str | None:
    """Access token from the HttpOnly cookie, else the Authorization header."""
    cookie_token = cookies.get(ACCESS_TOKEN_COOKIE)
    if cookie_token:
        return cookie_token.split(" ", 1)[1] if cookie_token.startswith("Bearer ") else cookie_token

    header = headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def has_admin_role(payload: Mapping[str, Any] | None) -> bool:
    """Whether the token claims grant admin or owner."""
    if not payload:
        return False
    roles: set[str] = set()
    role = payload.get("role")
    if isinstance(role, str):
        roles.add(role.lower())
    many = payload.get("roles")
    if isinstance(many, list):
        roles.update(r.lower() for r in many if isinstance(r, str))
    return bool(roles & ADMIN_ROLES)


def is_admin_request(cookies: Mapping[str, str], headers: Mapping[str, str]) -> bool:
    token = extract_token(cookies, headers)
    if not token:
        return False
    return has_admin_role(decode_access_token(token))
