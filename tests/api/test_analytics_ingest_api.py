"""
Tests for the public collector endpoint and the session cookie middleware.
"""

from __future__ import annotations

from src.components.analytics import InMemoryAnalyticsStore

COLLECT = "/api/analytics/collect"
SESSION_TOKEN = "a1b2c3d4e5f60718293a4b5c6d7e8f90"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class OutageStore(InMemoryAnalyticsStore):
    def insert_events(self, events):
        raise TimeoutError("database is locked")


def page_view(path: str = "/posts/hello") -> dict:
    return {"name": "page_view", "page": {"path": path, "referrer": "https://news.example/?x=1"}}


def post(client, payload, headers=None):
    merged = {"user-agent": BROWSER_UA}
    merged.update(headers or {})
    return client.post(COLLECT, json=payload, headers=merged)


class TestCollect:
    def test_page_view_accepted(self, client, memory_store, services):
        client.cookies.set("da_session", SESSION_TOKEN)

        response = post(client, {"events": [page_view()]})

        assert response.status_code == 202
        assert response.json() == {"accepted": 1}

        events = memory_store.all_events()
        assert len(events) == 1
        event = events[0]
        assert event.path == "/posts/hello"
        assert event.referrer == "https://news.example/"
        assert event.device_type == "desktop"
        assert event.browser == "Chrome"
        assert event.session == services.sessions.hash_session(SESSION_TOKEN)

        state = memory_store.get_read_state(event.session, "/posts/hello")
        assert state is not None
        assert state.progress_max == 0
        assert state.referrer == "https://news.example/"

    def test_huge_client_timestamp_keeps_rest_of_batch(self, client, memory_store):
        client.cookies.set("da_session", SESSION_TOKEN)
        bad = dict(page_view("/bad"), clientTs=10**400)

        response = post(client, {"events": [page_view("/ok"), bad]})

        assert response.status_code == 202
        assert response.json() == {"accepted": 2}
        assert sorted(e.path for e in memory_store.all_events()) == ["/bad", "/ok"]

    def test_forwarded_ip_is_hashed(self, client, memory_store, services):
        client.cookies.set("da_session", SESSION_TOKEN)
        post(client, [page_view()], headers={"x-forwarded-for": "198.51.100.7, 10.0.0.1"})

        event = memory_store.all_events()[0]
        assert event.ip_hash == services.sessions.anonymize_network_identifier("198.51.100.7")

    def test_without_cookie_is_204(self, client, memory_store):
        response = post(client, {"events": [page_view()]})
        assert response.status_code == 204
        assert response.content == b""
        assert memory_store.all_events() == []

    def test_do_not_track_is_204(self, client, memory_store):
        client.cookies.set("da_session", SESSION_TOKEN)
        assert post(client, [page_view()], headers={"dnt": "1"}).status_code == 204
        assert memory_store.all_events() == []

    def test_bot_is_204(self, client, memory_store):
        client.cookies.set("da_session", SESSION_TOKEN)
        response = post(client, [page_view()], headers={"user-agent": "curl/8.4.0"})
        assert response.status_code == 204

    def test_admin_is_204(self, client, memory_store, admin_token):
        client.cookies.set("da_session", SESSION_TOKEN)
        client.cookies.set("access_token", admin_token)
        assert post(client, [page_view()]).status_code == 204
        assert memory_store.all_events() == []

    def test_non_admin_token_still_counted(self, client, memory_store, reader_token):
        client.cookies.set("da_session", SESSION_TOKEN)
        client.cookies.set("access_token", reader_token)
        assert post(client, [page_view()]).status_code == 202

    def test_invalid_body_is_204(self, client):
        client.cookies.set("da_session", SESSION_TOKEN)
        response = client.post(
            COLLECT,
            content=b"{not json",
            headers={"user-agent": BROWSER_UA, "content-type": "application/json"},
        )
        assert response.status_code == 204

    def test_disabled_is_204(self, client, services, memory_store):
        services.flag.set_enabled(False)
        client.cookies.set("da_session", SESSION_TOKEN)
        assert post(client, [page_view()]).status_code == 204
        assert memory_store.all_events() == []

    def test_storage_outage_is_204(self, client, services):
        services.store = OutageStore()
        client.cookies.set("da_session", SESSION_TOKEN)
        assert post(client, [page_view()]).status_code == 204

    def test_rate_limit(self, client, services, memory_store):
        client.cookies.set("da_session", SESSION_TOKEN)
        limit = services.policy.rate_limit_max_events

        # Stay under the per-request cap while filling the window.
        per_request = services.rules.ingest.max_events_per_request
        sent = 0
        while sent < limit:
            batch = min(per_request, limit - sent)
            assert post(client, [page_view()] * batch).status_code == 202
            sent += batch

        assert post(client, [page_view()]).status_code == 204
        assert len(memory_store.all_events()) == limit


class TestSessionCookieMiddleware:
    def test_health_issues_cookie(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "analytics"}

        set_cookie = response.headers.get("set-cookie", "")
        assert set_cookie.startswith("da_session=")
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()
        assert "Secure" not in set_cookie

    def test_existing_cookie_not_reissued(self, client):
        client.cookies.set("da_session", SESSION_TOKEN)
        response = client.get("/health")
        assert "set-cookie" not in response.headers

    def test_api_routes_do_not_issue_cookie(self, client):
        response = post(client, [page_view()])
        assert "set-cookie" not in response.headers

    def test_issued_cookie_enables_collection(self, client, memory_store):
        client.get("/health")
        assert client.cookies.get("da_session")

        assert post(client, [page_view()]).status_code == 202
        assert len(memory_store.all_events()) == 1
