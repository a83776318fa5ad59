"""
tests/test_security_headers.py -- Unit tests for api/security_headers.py.

Coverage:
  - Profile contents (default, api, auth) and HSTS in production only
  - apply() overwrite semantics
  - Content-type based profile selection
  - CSPBuilder, create_csp_hash(), validate_security_headers()
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import replace

import pytest
from starlette.responses import Response

from api.security_headers import (
    API_CSP,
    AUTH_CSP,
    HSTS_VALUE,
    CSPBuilder,
    SecurityHeadersPolicy,
    api_headers,
    auth_headers,
    create_csp_hash,
    default_headers,
    headers_for_content_type,
    validate_security_headers,
)


class TestProfiles:
    def test_default_profile(self) -> None:
        headers = default_headers(production=False).headers()
        assert headers["X-Frame-Options"] == "DENY"
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert headers["X-XSS-Protection"] == "1; mode=block"
        assert headers["X-DNS-Prefetch-Control"] == "off"
        assert headers["X-Download-Options"] == "noopen"
        assert headers["X-Permitted-Cross-Domain-Policies"] == "none"
        assert "Cache-Control" not in headers

    def test_hsts_only_in_production(self) -> None:
        assert "Strict-Transport-Security" not in default_headers(False).headers()
        assert default_headers(True).headers()["Strict-Transport-Security"] == HSTS_VALUE
        assert auth_headers(True).headers()["Strict-Transport-Security"] == HSTS_VALUE

    def test_api_profile(self) -> None:
        headers = api_headers(False).headers()
        assert headers["Content-Security-Policy"] == API_CSP
        assert headers["Cross-Origin-Resource-Policy"] == "same-site"
        assert headers["Cache-Control"] == "no-store"

    def test_auth_profile(self) -> None:
        headers = auth_headers(False).headers()
        assert headers["Content-Security-Policy"] == AUTH_CSP
        assert headers["Cross-Origin-Embedder-Policy"] == "require-corp"
        assert headers["Cache-Control"] == "no-store"

    def test_none_disables_header(self) -> None:
        policy = replace(default_headers(False), x_frame_options=None, x_xss_protection=False)
        headers = policy.headers()
        assert "X-Frame-Options" not in headers
        assert "X-XSS-Protection" not in headers

    @pytest.mark.parametrize(
        ("content_type", "csp"),
        [
            ("application/json; charset=utf-8", API_CSP),
            ("image/png", "default-src 'none'"),
        ],
    )
    def test_headers_for_content_type(self, content_type: str, csp: str) -> None:
        assert headers_for_content_type(content_type).content_security_policy == csp

    def test_html_gets_default(self) -> None:
        assert headers_for_content_type("text/html") == default_headers(False)


class TestApply:
    def test_apply_overwrites(self) -> None:
        response = Response(headers={"X-Frame-Options": "SAMEORIGIN"})
        default_headers(False).apply(response)
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_apply_without_overwrite_keeps_existing(self) -> None:
        """overwrite=False leaves headers an inner layer already set."""
        response = Response(headers={"Cache-Control": "no-store", "Content-Security-Policy": API_CSP})
        replace(default_headers(False), cache_control="public").apply(response, overwrite=False)
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["Content-Security-Policy"] == API_CSP
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestCsp:
    def test_builder(self) -> None:
        csp = CSPBuilder().default_src("'self'").script_src("'self'", "https://cdn.example").object_src("'none'").build()
        assert csp == "default-src 'self'; script-src 'self' https://cdn.example; object-src 'none'"

    def test_builder_redefining_directive_replaces(self) -> None:
        assert CSPBuilder().img_src("'self'").img_src("data:").build() == "img-src data:"

    def test_hash(self) -> None:
        expected = base64.b64encode(hashlib.sha256(b"alert(1)").digest()).decode()
        assert create_csp_hash("alert(1)") == f"'sha256-{expected}'"
        assert create_csp_hash("x", "sha384").startswith("'sha384-")

    def test_hash_rejects_unknown_algorithm(self) -> None:
        with pytest.raises(ValueError):
            create_csp_hash("x", "md5")


class TestValidation:
    def test_shipped_profiles_are_clean(self) -> None:
        for policy in (default_headers(True), api_headers(True), auth_headers(True)):
            assert validate_security_headers(policy, production=True) == (True, [])

    def test_missing_hsts_in_production(self) -> None:
        valid, warnings = validate_security_headers(default_headers(False), production=True)
        assert not valid
        assert "HSTS should be enabled in production" in warnings

    def test_weak_settings(self) -> None:
        policy = SecurityHeadersPolicy(
            content_security_policy="script-src 'unsafe-inline' 'unsafe-eval'",
            x_frame_options="ALLOW-FROM https://x",
            x_content_type_options=False,
        )
        valid, warnings = validate_security_headers(policy, production=False)
        assert not valid
        assert len(warnings) == 4

    def test_disabled_csp(self) -> None:
        _, warnings = validate_security_headers(SecurityHeadersPolicy(content_security_policy=None), production=False)
        assert warnings == ["Content-Security-Policy is disabled"]
