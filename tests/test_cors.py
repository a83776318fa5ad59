"""
tests/test_cors.py -- Unit tests for api/cors.py.

Coverage:
  - Origin rules: exact list, wildcard, predicate, none
  - Header set for allowed and rejected origins
  - Preflight responses
  - Auth and API profiles in development and production
  - validate_cors_config()
"""

from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

from api.cors import (
    DEV_ORIGINS,
    CorsPolicy,
    api_cors_policy,
    auth_cors_policy,
    is_local_origin,
    validate_cors_config,
)
from tests.conftest import make_settings


def _req(origin: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(headers={"origin": origin} if origin else {})


class TestOriginRules:
    def test_list(self) -> None:
        policy = CorsPolicy(origins=["https://app.example"])
        assert policy.is_origin_allowed("https://app.example")
        assert not policy.is_origin_allowed("https://evil.example")

    def test_wildcard(self) -> None:
        assert CorsPolicy(origins="*").is_origin_allowed("https://anything.example")
        assert CorsPolicy(origins=["*"]).is_origin_allowed("https://anything.example")

    def test_predicate(self) -> None:
        policy = CorsPolicy(origins=is_local_origin)
        assert policy.is_origin_allowed("http://localhost:5173")
        assert policy.is_origin_allowed("http://127.0.0.1:8080")
        assert not policy.is_origin_allowed("http://localhost.evil.example")
        assert not policy.is_origin_allowed("file://localhost/etc")

    def test_none_allows_nothing(self) -> None:
        assert not CorsPolicy(origins=None).is_origin_allowed("http://localhost:3000")


class TestHeaders:
    def test_allowed_origin_is_echoed(self) -> None:
        headers = CorsPolicy(origins=["https://app.example"]).headers_for("https://app.example")
        assert headers["Access-Control-Allow-Origin"] == "https://app.example"
        assert headers["Vary"] == "Origin"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert "X-RateLimit-Remaining" in headers["Access-Control-Expose-Headers"]
        assert headers["Access-Control-Max-Age"] == "86400"

    def test_rejected_origin_gets_no_allow_origin(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="authguard.cors"):
            headers = CorsPolicy(origins=["https://app.example"]).headers_for("https://evil.example")
        assert "Access-Control-Allow-Origin" not in headers
        assert "Access-Control-Allow-Methods" in headers
        assert "https://evil.example" in caplog.text

    def test_literal_wildcard_sends_star(self) -> None:
        headers = CorsPolicy(origins="*", credentials=False).headers_for(None)
        assert headers["Access-Control-Allow-Origin"] == "*"
        assert "Access-Control-Allow-Credentials" not in headers

    def test_preflight(self) -> None:
        policy = CorsPolicy(origins=["https://app.example"], methods=["POST", "OPTIONS"], max_age=300)
        response = policy.preflight_response(_req("https://app.example"))
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://app.example"
        assert response.headers["access-control-allow-methods"] == "POST, OPTIONS"
        assert response.headers["access-control-max-age"] == "300"


class TestProfiles:
    def test_auth_dev_allows_any_localhost(self) -> None:
        policy = auth_cors_policy(make_settings())
        assert policy.is_origin_allowed("http://localhost:4000")
        assert not policy.is_origin_allowed("https://app.example")
        assert policy.methods == ["POST", "OPTIONS"]
        assert policy.max_age == 300

    def test_auth_production_uses_configured_origins(self) -> None:
        settings = make_settings(environment="production", cors_origins=["https://app.example"])
        policy = auth_cors_policy(settings)
        assert policy.is_origin_allowed("https://app.example")
        assert not policy.is_origin_allowed("http://localhost:3000")

    def test_auth_production_without_origins_allows_none(self) -> None:
        policy = auth_cors_policy(make_settings(environment="production", cors_origins=[]))
        assert policy.origins is None

    def test_api_dev_includes_dev_origins(self) -> None:
        policy = api_cors_policy(make_settings())
        for origin in DEV_ORIGINS:
            assert policy.is_origin_allowed(origin)


class TestValidation:
    def test_shipped_profiles_are_valid(self) -> None:
        settings = make_settings()
        assert validate_cors_config(auth_cors_policy(settings)) == (True, [])
        assert validate_cors_config(api_cors_policy(settings)) == (True, [])

    def test_invalid_config(self) -> None:
        policy = CorsPolicy(origins=["not a url", "https://ok.example"], methods=["POST", "FETCH"], max_age=-1)
        valid, errors = validate_cors_config(policy)
        assert not valid
        assert errors == [
            "Invalid origin URL format: not a url",
            "Invalid HTTP method: FETCH",
            "max_age must be a non-negative integer",
        ]

    def test_wildcard_with_credentials(self) -> None:
        _, errors = validate_cors_config(CorsPolicy(origins="*", credentials=True))
        assert "Wildcard origin cannot be combined with credentials" in errors
