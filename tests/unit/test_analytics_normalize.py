"""
Tests for the event normalizer.

Untrusted bodies become canonical RawEvent records or per-field rejections;
nothing raises on bad input.
"""

from __future__ import annotations

import json
import random
from datetime import UTC, datetime, timedelta

import pytest

from src.components.analytics import EventNormalizer, NormalizerConfig, parse_enabled_events
from src.components.analytics._normalize import (
    NormalizeContext,
    clamp_client_ts,
    extract_candidates,
    sanitize_data,
    sanitize_path,
    sanitize_progress,
    sanitize_referrer,
    sanitize_viewport,
)
from src.components.analytics.models import Viewport

SERVER_TS = datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC)
SERVER_MS = int(SERVER_TS.timestamp() * 1000)
IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest.fixture
def nctx() -> NormalizeContext:
    return NormalizeContext(session="hashed", server_ts=SERVER_TS, user_agent=IPHONE, ip_hash="ip")


def normalizer(**config) -> EventNormalizer:
    return EventNormalizer(NormalizerConfig(**config), rng=random.Random(3))


class TestExtractCandidates:
    def test_envelope(self):
        assert extract_candidates(b'{"events": [{"name": "page_view"}]}') == [{"name": "page_view"}]

    def test_bare_list(self):
        assert extract_candidates('[1, 2]') == [1, 2]

    @pytest.mark.parametrize("body", [None, b"", b"{", b'"text"', b'{"events": {}}', b"\xff\xfe"])
    def test_invalid(self, body):
        assert extract_candidates(body) == []


class TestSanitizers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("/posts/abc?x=1#y", "/posts/abc"),
            ("https://blog.example/posts/abc?utm=1", "/posts/abc"),
            ("http://[::1", "/"),
            ("", "/"),
            (None, "/"),
            (42, "/"),
        ],
    )
    def test_path(self, raw, expected):
        assert sanitize_path(raw) == expected

    def test_path_is_truncated(self):
        assert len(sanitize_path("/" + "a" * 2000)) <= 512

    def test_referrer_drops_query_and_fragment(self):
        assert sanitize_referrer("https://news.example/item?id=1#top") == "https://news.example/item"

    @pytest.mark.parametrize("raw", [None, "", "   ", 5])
    def test_referrer_missing(self, raw):
        assert sanitize_referrer(raw) is None

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (50, 50),
            (49.5, 50),
            ("75", 75),
            (-3, 0),
            (250, 100),
            (True, None),
            ("abc", None),
            (10**400, None),
        ],
    )
    def test_progress(self, raw, expected):
        assert sanitize_progress(raw) == expected

    def test_data_drops_proto_keys_and_deep_values(self):
        data = sanitize_data(
            {"__proto__": {"x": 1}, "ok": "yes", "deep": {"a": {"b": {"c": 1}}}, "n": float("nan")}
        )
        assert data == {"ok": "yes"}

    def test_data_keeps_shallow_structures(self):
        data = sanitize_data({"tags": ["a", " ", "b"], "meta": {"depth": 1}})
        assert data == {"tags": ["a", "b"], "meta": {"depth": 1}}

    def test_data_drops_huge_integers(self):
        assert sanitize_data({"big": 10**400, "n": 3}) == {"n": 3}

    def test_viewport_ignores_huge_dimensions(self):
        assert sanitize_viewport({"width": 10**400, "height": 800}) == Viewport(width=None, height=800)


class TestClampClientTs:
    def test_in_window(self):
        ts = clamp_client_ts(SERVER_MS - 5000, SERVER_TS)
        assert ts == SERVER_TS - timedelta(seconds=5)

    def test_too_far_in_future(self):
        assert clamp_client_ts(SERVER_MS + 11 * 60 * 1000, SERVER_TS) == SERVER_TS

    def test_too_far_in_past(self):
        assert clamp_client_ts(SERVER_MS - 31 * 86400 * 1000, SERVER_TS) == SERVER_TS

    @pytest.mark.parametrize("raw", [None, "123", True, float("inf"), 1e30, 10**400])
    def test_unusable(self, raw):
        assert clamp_client_ts(raw, SERVER_TS) == SERVER_TS


class TestDecode:
    def test_page_view(self, nctx):
        result = normalizer().decode(
            {
                "name": "page_view",
                "clientTs": SERVER_MS - 1000,
                "page": {
                    "path": "/posts/abc?x=1",
                    "referrer": "https://news.example/?q=1",
                    "title": "  Hello  ",
                },
                "viewport": {"width": 390.4, "height": 844},
            },
            nctx,
        )

        assert result.ok
        event = result.event
        assert event.name == "page_view"
        assert event.session == "hashed"
        assert event.server_ts == SERVER_TS
        assert event.client_ts == SERVER_TS - timedelta(seconds=1)
        assert event.path == "/posts/abc"
        assert event.referrer == "https://news.example/"
        assert event.title == "Hello"
        assert event.device_type == "mobile"
        assert event.os == "iOS"
        assert event.browser == "Safari"
        assert event.ip_hash == "ip"
        assert event.viewport.width == 390
        assert event.viewport.height == 844

    def test_device_hint_overrides_classifier(self, nctx):
        result = normalizer().decode({"name": "page_view", "device": "tablet"}, nctx)
        assert result.event.device_type == "tablet"

    def test_unknown_device_hint_ignored(self, nctx):
        result = normalizer().decode({"name": "page_view", "device": "fridge"}, nctx)
        assert result.event.device_type == "mobile"

    def test_read_complete_implies_full_progress(self, nctx):
        result = normalizer().decode({"name": "read_complete", "page": {"path": "/p"}}, nctx)
        assert result.event.progress_bucket == 100

    def test_unknown_event(self, nctx):
        result = normalizer().decode({"name": "nope"}, nctx)
        assert not result.ok
        assert result.errors[0].code == "unknown_event"
        assert result.errors[0].field_name == "name"

    def test_disabled_event(self, nctx):
        result = normalizer(enabled_events=frozenset({"page_view"})).decode(
            {"name": "read_complete"}, nctx
        )
        assert result.errors[0].code == "disabled_event"

    def test_size_limit(self, nctx):
        result = normalizer(max_event_bytes=512).decode(
            {"name": "page_view", "page": {"title": "x" * 200, "path": "/" + "p" * 300}},
            nctx,
        )
        assert result.errors[0].code == "event_too_large"

    @pytest.mark.parametrize("rate, expected", [(0.0, 0), (1.0, 5)])
    def test_progress_sampling(self, nctx, rate, expected):
        events = [{"name": "read_progress", "data": {"progress": p}} for p in (10, 20, 30, 40, 50)]
        result = normalizer(read_progress_sample_rate=rate).normalize_candidates(events, nctx)
        assert len(result.events) == expected

    def test_sampling_leaves_other_events_alone(self, nctx):
        result = normalizer(read_progress_sample_rate=0.0).normalize_candidates(
            [{"name": "page_view"}, {"name": "read_progress", "data": {"progress": 10}}],
            nctx,
        )
        assert [e.name for e in result.events] == ["page_view"]

    def test_per_request_cap(self, nctx):
        body = json.dumps({"events": [{"name": "page_view"}] * 40})
        result = normalizer(max_events_per_request=25).normalize(body, nctx)
        assert len(result.events) == 25

    def test_huge_integers_do_not_sink_the_batch(self, nctx):
        huge = 10**400
        body = json.dumps(
            [
                {"name": "page_view", "clientTs": SERVER_MS, "page": {"path": "/ok"}},
                {
                    "name": "read_progress",
                    "clientTs": huge,
                    "page": {"path": "/big"},
                    "data": {"progress": huge},
                    "viewport": {"width": huge},
                },
            ]
        )
        result = normalizer().normalize(body, nctx)

        assert [e.path for e in result.events] == ["/ok", "/big"]
        big = result.events[1]
        assert big.client_ts == SERVER_TS
        assert big.progress_bucket is None
        assert big.viewport is None


class TestEnabledEvents:
    def test_comma_separated(self):
        assert parse_enabled_events("page_view, read_complete,bogus") == frozenset(
            {"page_view", "read_complete"}
        )

    def test_empty_falls_back_to_defaults(self):
        defaults = parse_enabled_events(None)
        assert "page_view" in defaults
        assert parse_enabled_events("bogus") == defaults
