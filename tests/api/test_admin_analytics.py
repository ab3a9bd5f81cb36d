"""
Tests for the admin analytics API: cron trigger, enabled toggle, rollup queries.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.components.analytics import RawEvent, RefreshRollupsInput, run_refresh

CRON = "/api/cron/analytics"
TOGGLE = "/api/admin/analytics/toggle"
PAGES = "/api/admin/analytics/rollups/pages"
REFERRERS = "/api/admin/analytics/rollups/referrers"
DEVICES = "/api/admin/analytics/rollups/devices"


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def seed_views(store, now: datetime) -> None:
    store.insert_events(
        [
            RawEvent(
                name="page_view",
                session=f"s{i}",
                client_ts=now,
                server_ts=now,
                path="/posts/hello",
                referrer="https://news.example/" if i % 2 else None,
                device_type="desktop",
                os="Linux",
                browser="Firefox",
            )
            for i in range(3)
        ]
    )


class TestCronTrigger:
    def test_open_outside_production_without_secret(self, client, clock):
        response = client.post(CRON)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["lookback_days"] == 3
        assert body["processed_to"] == clock.now_utc().date().isoformat()
        assert body["processed_from"] == (clock.now_utc().date() - timedelta(days=3)).isoformat()
        assert body["days"] == 4

    def test_get_also_triggers(self, client):
        assert client.get(CRON).json()["ok"] is True

    def test_blocked_in_production_without_secret(self, client, services):
        services.settings.environment = "production"
        response = client.post(CRON)
        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "Unauthorized"}

    @pytest.mark.parametrize("header", [None, "Bearer wrong", "Basic s3cret", "s3cret"])
    def test_secret_required_when_configured(self, client, services, header):
        services.settings.cron_secret = "s3cret"
        headers = {"Authorization": header} if header else {}
        assert client.post(CRON, headers=headers).status_code == 401

    def test_correct_secret(self, client, services):
        services.settings.cron_secret = "s3cret"
        services.settings.environment = "production"
        assert client.post(CRON, headers=auth("s3cret")).status_code == 200

    def test_builds_rollups(self, client, services, memory_store, clock, admin_token):
        seed_views(memory_store, clock.now_utc())
        client.post(CRON)

        rows = client.get(PAGES, headers=auth(admin_token)).json()
        assert [(r["path"], r["views"]) for r in rows] == [("/posts/hello", 3)]

    def test_failure_is_500(self, client, services, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(services.store, "purge_expired", explode)
        response = client.post(CRON)
        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "disk full"}


class TestToggle:
    def test_requires_admin(self, client, reader_token):
        assert client.get(TOGGLE).status_code == 403
        assert client.get(TOGGLE, headers=auth(reader_token)).status_code == 403
        assert client.post(TOGGLE, json={"enabled": False}, headers=auth(reader_token)).status_code == 403

    def test_read_and_flip(self, client, admin_token, services):
        assert client.get(TOGGLE, headers=auth(admin_token)).json() == {"enabled": True}

        response = client.post(TOGGLE, json={"enabled": False}, headers=auth(admin_token))
        assert response.status_code == 200
        assert response.json() == {"enabled": False}
        assert services.flag.is_enabled() is False

        assert client.get(TOGGLE, headers=auth(admin_token)).json() == {"enabled": False}

    def test_admin_cookie_accepted(self, client, admin_token):
        client.cookies.set("access_token", admin_token)
        assert client.get(TOGGLE).status_code == 200

    @pytest.mark.parametrize("payload", [{"enabled": "false"}, {"enabled": 0}, {}, ["enabled"]])
    def test_rejects_non_boolean(self, client, admin_token, payload):
        response = client.post(TOGGLE, json=payload, headers=auth(admin_token))
        assert response.status_code == 400

    def test_rejects_invalid_json(self, client, admin_token):
        response = client.post(
            TOGGLE,
            content=b"{oops",
            headers={**auth(admin_token), "content-type": "application/json"},
        )
        assert response.status_code == 400


class TestRollupQueries:
    def test_requires_admin(self, client):
        for url in (PAGES, REFERRERS, DEVICES):
            assert client.get(url).status_code == 403

    def test_lists_rows(self, client, memory_store, clock, admin_token):
        seed_views(memory_store, clock.now_utc())
        client.post(CRON)
        today = clock.now_utc().date().isoformat()

        pages = client.get(PAGES, params={"start": today, "end": today}, headers=auth(admin_token))
        assert pages.status_code == 200
        page = pages.json()[0]
        assert page["day"] == today
        assert page["sessions"] == 0
        assert page["completion_rate"] == 0.0
        assert set(page["funnel"]) == {f"b{n}" for n in range(0, 101, 5)}

        referrers = client.get(REFERRERS, headers=auth(admin_token)).json()
        assert [(r["referrer"], r["views"]) for r in referrers] == [
            (None, 2),
            ("https://news.example/", 1),
        ]

        devices = client.get(DEVICES, headers=auth(admin_token)).json()
        assert [(d["device_type"], d["os"], d["browser"], d["sessions"]) for d in devices] == [
            ("desktop", "Linux", "Firefox", 3)
        ]

    def test_default_range_excludes_older_days(self, client, memory_store, clock, admin_token):
        old = clock.now_utc() - timedelta(days=10)
        seed_views(memory_store, old)
        run_refresh(
            RefreshRollupsInput(from_date=old.date(), to_date=old.date()),
            store=memory_store,
            time_port=clock,
        )

        assert client.get(PAGES, headers=auth(admin_token)).json() == []
        rows = client.get(
            PAGES,
            params={"start": old.date().isoformat(), "end": old.date().isoformat()},
            headers=auth(admin_token),
        ).json()
        assert len(rows) == 1

    def test_inverted_range(self, client, admin_token):
        response = client.get(
            PAGES, params={"start": "2026-03-10", "end": "2026-03-01"}, headers=auth(admin_token)
        )
        assert response.status_code == 400

    def test_range_too_long(self, client, admin_token):
        response = client.get(
            PAGES, params={"start": "2024-01-01", "end": "2026-03-01"}, headers=auth(admin_token)
        )
        assert response.status_code == 400

    def test_bad_date(self, client, admin_token):
        response = client.get(PAGES, params={"start": "yesterday"}, headers=auth(admin_token))
        assert response.status_code == 422
