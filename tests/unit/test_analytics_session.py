"""
Tests for anonymous session identity.

Tokens stay in the cookie; only salted hashes are persisted.
"""

from __future__ import annotations

import logging

import pytest

from src.components.analytics import (
    SESSION_COOKIE_NAME,
    SESSION_MAX_AGE_SECONDS,
    SessionIdentityService,
    resolve_salt,
)
from src.components.analytics._session import FALLBACK_SALT, is_valid_token

TOKEN = "a1b2c3d4e5f60718293a4b5c6d7e8f90"


class TestTokenShape:
    @pytest.mark.parametrize(
        "value", [TOKEN, "abcdefghijklmnop", "A-b_c-D_e-F_g-H_i"]
    )
    def test_valid(self, value):
        assert is_valid_token(value)

    @pytest.mark.parametrize(
        "value", [None, "", "short", "has space in it!!", "x" * 129, "semi;colon;token;x"]
    )
    def test_invalid(self, value):
        assert not is_valid_token(value)


class TestEnsureSession:
    def test_reuses_valid_cookie(self):
        service = SessionIdentityService(salt="s")
        issue = service.ensure_session(TOKEN)
        assert issue.token == TOKEN
        assert issue.is_new is False

    def test_issues_new_token_when_missing(self):
        service = SessionIdentityService(salt="s")
        issue = service.ensure_session(None)
        assert issue.is_new is True
        assert is_valid_token(issue.token)

    def test_replaces_malformed_cookie(self):
        service = SessionIdentityService(salt="s")
        issue = service.ensure_session("bad token")
        assert issue.is_new is True
        assert issue.token != "bad token"

    def test_new_tokens_are_unique(self):
        service = SessionIdentityService(salt="s")
        tokens = {service.ensure_session(None).token for _ in range(50)}
        assert len(tokens) == 50

    def test_cookie_attributes(self):
        service = SessionIdentityService(salt="s", secure_cookies=True)
        cookie = service.cookie_for(service.ensure_session(None))
        assert cookie.name == SESSION_COOKIE_NAME
        assert cookie.max_age == SESSION_MAX_AGE_SECONDS
        assert cookie.httponly is True
        assert cookie.samesite == "lax"
        assert cookie.secure is True


class TestHashing:
    def test_hash_is_stable_for_same_salt(self):
        a = SessionIdentityService(salt="one")
        b = SessionIdentityService(salt="one")
        assert a.hash_session(TOKEN) == b.hash_session(TOKEN)

    def test_hash_differs_across_salts(self):
        a = SessionIdentityService(salt="one")
        b = SessionIdentityService(salt="two")
        assert a.hash_session(TOKEN) != b.hash_session(TOKEN)

    def test_hash_hides_token(self):
        digest = SessionIdentityService(salt="one").hash_session(TOKEN)
        assert TOKEN not in digest
        assert len(digest) == 64

    def test_network_identifier(self):
        service = SessionIdentityService(salt="one")
        hashed = service.anonymize_network_identifier("198.51.100.4")
        assert hashed is not None
        assert len(hashed) == 32
        assert "198.51.100.4" not in hashed
        assert hashed != service.hash_session("198.51.100.4")[:32]

    def test_network_identifier_missing(self):
        assert SessionIdentityService(salt="one").anonymize_network_identifier(None) is None


class TestResolveSalt:
    def test_first_non_blank_wins(self):
        assert resolve_salt(None, "  ", " pepper ", "other") == "pepper"

    def test_fallback_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert resolve_salt(None, "") == FALLBACK_SALT
        assert "insecure fallback" in caplog.text
