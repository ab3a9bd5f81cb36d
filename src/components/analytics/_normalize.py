"""
Event normalizer and sanitizer.

Turns an untrusted request body into canonical RawEvent records. Each
candidate goes through a strict decoder that returns either an event or the
per-field errors explaining its rejection; nothing here raises on bad input.

Key behaviors:
- Body may be a bare list or {"events": [...]}; anything else is empty
- Unknown or disabled event kinds are dropped
- read_progress events are sampled
- Paths keep only the URL path component; referrers lose query/fragment
- Client timestamps outside the sanity window are replaced by server time
- Oversized records are dropped
"""

from __future__ import annotations

import json
import math
import random
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlsplit

from ._events import DEFAULT_ENABLED_EVENTS, EventKind, is_known_event
from ._user_agent import classify
from .models import DEVICE_TYPES, AnalyticsValidationError, RawEvent, Viewport

MAX_PATH_LENGTH = 512
MAX_REFERRER_LENGTH = 256
MAX_TITLE_LENGTH = 256
MAX_DATA_KEYS = 20
MAX_DATA_KEY_LENGTH = 64
MAX_DATA_STRING_LENGTH = 256
MAX_DATA_ARRAY_ITEMS = 10
MAX_DATA_DEPTH = 2

# --- Configuration ---


@dataclass(frozen=True)
class NormalizerConfig:
    """Normalizer limits."""

    enabled_events: frozenset[str] = field(
        default_factory=lambda: frozenset(DEFAULT_ENABLED_EVENTS),
    )
    read_progress_sample_rate: float = 1.0
    max_events_per_request: int = 25
    max_event_bytes: int = 4096
    max_future_seconds: int = 10 * 60
    max_past_seconds: int = 30 * 24 * 60 * 60


@dataclass(frozen=True)
class NormalizeContext:
    """Per-request values stamped onto every event."""

    session: str
    server_ts: datetime
    user_agent: str = ""
    ip_hash: str | None = None


# --- Results ---


@dataclass(frozen=True)
class DecodeResult:
    """Tagged result of decoding one candidate."""

    event: RawEvent | None
    errors: list[AnalyticsValidationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.event is not None


@dataclass(frozen=True)
class NormalizeResult:
    """Accepted events plus the reasons others were dropped."""

    events: list[RawEvent]
    rejections: list[AnalyticsValidationError] = field(default_factory=list)


def _reject(code: str, message: str, field_name: str | None = None) -> DecodeResult:
    return DecodeResult(
        event=None,
        errors=[AnalyticsValidationError(code=code, message=message, field_name=field_name)],
    )


# --- Body Parsing ---


def extract_candidates(body: bytes | str | None) -> list[Any]:
    """Decode JSON and pull out the event list. Invalid input yields []."""
    if not body:
        return []

    try:
        parsed = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return []

    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("events"), list):
        return list(parsed["events"])
    return []


# --- Field Sanitizers ---


def sanitize_string(value: Any, max_length: int) -> str | None:
    """Trimmed, truncated string, or None when empty or not a string."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed[:max_length]


def sanitize_path(value: Any) -> str:
    """Keep only the path component of a URL; '/' on any failure."""
    if not isinstance(value, str) or not value.strip():
        return "/"
    try:
        path = urlsplit(value.strip()).path
    except ValueError:
        return "/"
    if not path:
        return "/"
    if not path.startswith("/"):
        path = f"/{path}"
    return path[:MAX_PATH_LENGTH]


def sanitize_referrer(value: Any) -> str | None:
    """Referrer without query, fragment or surrounding whitespace."""
    raw = sanitize_string(value, 2048)
    if raw is None:
        return None
    try:
        parts = urlsplit(raw)
    except ValueError:
        return None

    if parts.scheme and parts.netloc:
        cleaned = f"{parts.scheme}://{parts.netloc}{parts.path}"
    else:
        cleaned = raw.split("#", 1)[0].split("?", 1)[0]

    cleaned = "".join(cleaned.split())
    return cleaned[:MAX_REFERRER_LENGTH] or None


def finite_number(value: Any) -> float | None:
    """Float value of a JSON number, or None when absent, boolean or not finite."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        # json.loads keeps arbitrarily long integers exact
        return None
    return number if math.isfinite(number) else None


def sanitize_progress(value: Any) -> int | None:
    """Clamp a numeric or numeric-string progress value to 0..100."""
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    number = finite_number(value)
    if number is None:
        return None
    clamped = max(0.0, min(100.0, number))
    return int(math.floor(clamped + 0.5))


def sanitize_device(value: Any) -> str | None:
    """Restrict a client device hint to the known device types."""
    if isinstance(value, str) and value in DEVICE_TYPES:
        return value
    return None


def sanitize_viewport(value: Any) -> Viewport | None:
    """Positive, rounded viewport dimensions."""
    if not isinstance(value, dict):
        return None

    def _dimension(raw: Any) -> int | None:
        number = finite_number(raw)
        if number is None or number <= 0:
            return None
        return int(round(number))

    width = _dimension(value.get("width"))
    height = _dimension(value.get("height"))
    if width is None and height is None:
        return None
    return Viewport(width=width, height=height)


def sanitize_value(value: Any, depth: int = 0) -> Any:
    """Sanitize one free-form data value. Returns None to drop it."""
    if depth > MAX_DATA_DEPTH:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return sanitize_string(value, MAX_DATA_STRING_LENGTH)
    if isinstance(value, (int, float)):
        if finite_number(value) is None:
            return None
        return round(value, 6) if isinstance(value, float) else value
    if isinstance(value, list):
        if depth > 1:
            return None
        items = [sanitize_value(item, depth + 1) for item in value[:MAX_DATA_ARRAY_ITEMS]]
        kept = [item for item in items if item is not None]
        return kept or None
    if isinstance(value, dict):
        return sanitize_data(value, depth + 1)
    return None


def sanitize_data(value: Any, depth: int = 0) -> dict[str, Any] | None:
    """Bounded copy of the event's free-form data object."""
    if not isinstance(value, dict) or depth > MAX_DATA_DEPTH:
        return None

    result: dict[str, Any] = {}
    for key in list(value.keys())[:MAX_DATA_KEYS]:
        if not isinstance(key, str):
            continue
        trimmed = key.strip()[:MAX_DATA_KEY_LENGTH]
        if not trimmed or trimmed.startswith("__proto__"):
            continue
        cleaned = sanitize_value(value[key], depth)
        if cleaned is not None:
            result[trimmed] = cleaned
    return result or None


def clamp_client_ts(
    value: Any,
    server_ts: datetime,
    max_future_seconds: int = 10 * 60,
    max_past_seconds: int = 30 * 24 * 60 * 60,
) -> datetime:
    """Epoch-ms client timestamp, or server time when missing or out of window."""
    number = finite_number(value)
    if number is None:
        return server_ts
    try:
        candidate = datetime.fromtimestamp(number / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return server_ts

    earliest = server_ts - timedelta(seconds=max_past_seconds)
    latest = server_ts + timedelta(seconds=max_future_seconds)
    if earliest <= candidate <= latest:
        return candidate
    return server_ts


def encoded_size(event: RawEvent) -> int:
    """Byte size of the event's JSON encoding."""
    return len(json.dumps(asdict(event), default=str, separators=(",", ":")).encode())


# --- Normalizer ---


class EventNormalizer:
    """Decodes request bodies into RawEvent records."""

    def __init__(
        self,
        config: NormalizerConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or NormalizerConfig()
        self._rng = rng or random.Random()

    def decode(self, candidate: Any, ctx: NormalizeContext) -> DecodeResult:
        """Decode one candidate event."""
        config = self._config

        if not isinstance(candidate, dict):
            return _reject("invalid_event", "Event must be an object")

        name = candidate.get("name")
        name = name.strip() if isinstance(name, str) else name
        if not is_known_event(name):
            return _reject("unknown_event", "Event name is not recognized", "name")
        if name not in config.enabled_events:
            return _reject("disabled_event", f"Event '{name}' is not enabled", "name")

        if name == EventKind.READ_PROGRESS.value:
            if self._rng.random() >= config.read_progress_sample_rate:
                return _reject("sampled_out", "Dropped by progress sampling", "name")

        page = candidate.get("page")
        page = page if isinstance(page, dict) else {}
        data = sanitize_data(candidate.get("data"))

        progress = None
        if data is not None:
            progress = sanitize_progress(data.get("progress", data.get("percent")))
        if progress is None and name == EventKind.READ_COMPLETE.value:
            progress = 100

        device_hint = sanitize_device(candidate.get("device"))
        dims = classify(ctx.user_agent, fallback_device=device_hint or "desktop")

        flags = candidate.get("flags")
        is_sampled = None
        if isinstance(flags, dict) and isinstance(flags.get("isSampled"), bool):
            is_sampled = flags["isSampled"]

        event = RawEvent(
            name=name,
            session=ctx.session,
            client_ts=clamp_client_ts(
                candidate.get("clientTs"),
                ctx.server_ts,
                config.max_future_seconds,
                config.max_past_seconds,
            ),
            server_ts=ctx.server_ts,
            path=sanitize_path(page.get("path")),
            referrer=sanitize_referrer(page.get("referrer")),
            title=sanitize_string(page.get("title"), MAX_TITLE_LENGTH),
            device_type=device_hint or dims.device_type,
            os=dims.os,
            browser=dims.browser,
            progress_bucket=progress,
            ip_hash=ctx.ip_hash,
            viewport=sanitize_viewport(candidate.get("viewport")),
            data=data,
            is_sampled=is_sampled,
        )

        if encoded_size(event) > config.max_event_bytes:
            return _reject("event_too_large", "Encoded event exceeds size limit")

        return DecodeResult(event=event)

    def normalize(self, body: bytes | str | None, ctx: NormalizeContext) -> NormalizeResult:
        """Decode a whole request body."""
        candidates = extract_candidates(body)
        return self.normalize_candidates(candidates, ctx)

    def normalize_candidates(self, candidates: list[Any], ctx: NormalizeContext) -> NormalizeResult:
        """Decode already-extracted candidates, capped per request."""
        events: list[RawEvent] = []
        rejections: list[AnalyticsValidationError] = []

        for candidate in candidates[: self._config.max_events_per_request]:
            result = self.decode(candidate, ctx)
            if result.event is not None:
                events.append(result.event)
            else:
                rejections.extend(result.errors)

        return NormalizeResult(events=events, rejections=rejections)
