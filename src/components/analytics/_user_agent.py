"""
User agent classifier.

Order matters: tablet patterns run before mobile so iPads and Android
tablets are not counted as phones. Shared by ingestion and rollups, so it
must stay pure.
"""

from __future__ import annotations

import re

from .models import UserAgentDimensions

UNKNOWN = "unknown"
MAX_DIMENSION_LENGTH = 64

_TABLET = re.compile(r"ipad|tablet|android(?!.*mobile)", re.IGNORECASE)
_MOBILE = re.compile(r"mobile|iphone|ipod|android.+mobile|windows phone", re.IGNORECASE)

_OS_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"windows nt 10\.", re.IGNORECASE), "Windows 10"),
    (re.compile(r"windows nt 11\.", re.IGNORECASE), "Windows 11"),
    (re.compile(r"windows nt", re.IGNORECASE), "Windows"),
    (re.compile(r"iphone|ipad|ipod", re.IGNORECASE), "iOS"),
    (re.compile(r"mac os x 10[._]\d+", re.IGNORECASE), "macOS"),
    (re.compile(r"android", re.IGNORECASE), "Android"),
    (re.compile(r"linux", re.IGNORECASE), "Linux"),
)


def detect_device_type(ua: str, fallback: str = "desktop") -> str:
    """Detect tablet/mobile, else return the fallback."""
    if not ua:
        return fallback
    if _TABLET.search(ua):
        return "tablet"
    if _MOBILE.search(ua):
        return "mobile"
    return fallback


def detect_os(ua: str) -> str:
    """Detect a coarse operating system name."""
    if not ua:
        return UNKNOWN
    for pattern, name in _OS_PATTERNS:
        if pattern.search(ua):
            return name
    return UNKNOWN


def detect_browser(ua: str) -> str:
    """Detect a coarse browser family."""
    if not ua:
        return UNKNOWN
    lowered = ua.lower()
    if "edg/" in lowered:
        return "Edge"
    if "opr/" in lowered:
        return "Opera"
    if "chrome/" in lowered and "safari/" in lowered:
        return "Chrome"
    if "safari/" in lowered and "chrome/" not in lowered:
        return "Safari"
    if "firefox/" in lowered:
        return "Firefox"
    return UNKNOWN


def classify(user_agent: str | None, fallback_device: str = "desktop") -> UserAgentDimensions:
    """Derive device/os/browser dimensions from a raw User-Agent header."""
    ua = user_agent or ""
    return UserAgentDimensions(
        device_type=detect_device_type(ua, fallback_device),
        os=detect_os(ua)[:MAX_DIMENSION_LENGTH],
        browser=detect_browser(ua)[:MAX_DIMENSION_LENGTH],
    )
