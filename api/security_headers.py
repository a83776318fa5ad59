"""
api/security_headers.py -- Response header hardening policies.

A SecurityHeadersPolicy is a frozen bundle of header values; None switches a
header off. Three profiles ship:

  default -- general responses (set app-wide by the middleware in api/main.py)
  api     -- JSON endpoints: CSP "default-src 'none'", no-store caching
  auth    -- login/signup/logout: strict CSP, COEP require-corp, no-store

Strict-Transport-Security is only emitted in production; sending HSTS from a
plain-HTTP dev server would pin browsers to HTTPS for localhost.
X-DNS-Prefetch-Control, X-Download-Options and X-Permitted-Cross-Domain-Policies
are always set.

Also here: CSPBuilder (fluent CSP assembly), create_csp_hash() for inline
script allow-listing, and validate_security_headers() for config review.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, replace
from typing import Any

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"
PERMISSIONS_POLICY = "camera=(), microphone=(), geolocation=(), payment=(), usb=(), serial=(), bluetooth=()"

DEFAULT_CSP = (
    "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; connect-src 'self' https:; frame-ancestors 'none';"
)
API_CSP = "default-src 'none'; frame-ancestors 'none'"
AUTH_CSP = (
    "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; img-src 'self' data:; "
    "connect-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self';"
)

_ALWAYS = {
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
}


@dataclass(frozen=True)
class SecurityHeadersPolicy:
    content_security_policy: str | None = DEFAULT_CSP
    x_frame_options: str | None = "DENY"
    x_content_type_options: bool = True
    referrer_policy: str | None = "strict-origin-when-cross-origin"
    permissions_policy: str | None = PERMISSIONS_POLICY
    strict_transport_security: str | None = None
    x_xss_protection: bool = True
    cross_origin_embedder_policy: str | None = "credentialless"
    cross_origin_opener_policy: str | None = "same-origin"
    cross_origin_resource_policy: str | None = "same-origin"
    cache_control: str | None = None

    def headers(self) -> dict[str, str]:
        values: dict[str, str | None] = {
            "Content-Security-Policy": self.content_security_policy,
            "X-Frame-Options": self.x_frame_options,
            "X-Content-Type-Options": "nosniff" if self.x_content_type_options else None,
            "Referrer-Policy": self.referrer_policy,
            "Permissions-Policy": self.permissions_policy,
            "Strict-Transport-Security": self.strict_transport_security,
            "X-XSS-Protection": "1; mode=block" if self.x_xss_protection else None,
            "Cross-Origin-Embedder-Policy": self.cross_origin_embedder_policy,
            "Cross-Origin-Opener-Policy": self.cross_origin_opener_policy,
            "Cross-Origin-Resource-Policy": self.cross_origin_resource_policy,
            "Cache-Control": self.cache_control,
        }
        result = {name: value for name, value in values.items() if value}
        result.update(_ALWAYS)
        return result

    def apply(self, response: Any, *, overwrite: bool = True) -> Any:
        """Set the policy's headers on a Starlette response and return it.

        overwrite=False keeps headers an inner layer already chose, so a
        route's stricter profile survives the app-wide default.
        """
        for name, value in self.headers().items():
            if overwrite or name not in response.headers:
                response.headers[name] = value
        return response


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def default_headers(production: bool) -> SecurityHeadersPolicy:
    return SecurityHeadersPolicy(strict_transport_security=HSTS_VALUE if production else None)


def api_headers(production: bool) -> SecurityHeadersPolicy:
    return replace(
        default_headers(production),
        content_security_policy=API_CSP,
        cross_origin_resource_policy="same-site",
        cache_control="no-store",
    )


def auth_headers(production: bool) -> SecurityHeadersPolicy:
    return replace(
        default_headers(production),
        content_security_policy=AUTH_CSP,
        cross_origin_embedder_policy="require-corp",
        cache_control="no-store",
    )


def headers_for_content_type(content_type: str, production: bool = False) -> SecurityHeadersPolicy:
    """Pick a policy suited to the payload type being served."""
    if "application/json" in content_type:
        return api_headers(production)
    if content_type.startswith("image/"):
        return replace(
            default_headers(production),
            content_security_policy="default-src 'none'",
            cross_origin_resource_policy="cross-origin",
        )
    return default_headers(production)


# ---------------------------------------------------------------------------
# CSP helpers
# ---------------------------------------------------------------------------


class CSPBuilder:
    """Fluent Content-Security-Policy assembly.

    Usage:
        csp = CSPBuilder().default_src("'self'").script_src("'self'", create_csp_hash(js)).build()
    """

    def __init__(self) -> None:
        self._directives: dict[str, list[str]] = {}

    def directive(self, name: str, *sources: str) -> CSPBuilder:
        self._directives[name] = list(sources)
        return self

    def default_src(self, *sources: str) -> CSPBuilder:
        return self.directive("default-src", *sources)

    def script_src(self, *sources: str) -> CSPBuilder:
        return self.directive("script-src", *sources)

    def style_src(self, *sources: str) -> CSPBuilder:
        return self.directive("style-src", *sources)

    def img_src(self, *sources: str) -> CSPBuilder:
        return self.directive("img-src", *sources)

    def connect_src(self, *sources: str) -> CSPBuilder:
        return self.directive("connect-src", *sources)

    def font_src(self, *sources: str) -> CSPBuilder:
        return self.directive("font-src", *sources)

    def frame_ancestors(self, *sources: str) -> CSPBuilder:
        return self.directive("frame-ancestors", *sources)

    def object_src(self, *sources: str) -> CSPBuilder:
        return self.directive("object-src", *sources)

    def build(self) -> str:
        return "; ".join(f"{name} {' '.join(sources)}".strip() for name, sources in self._directives.items())


def create_csp_hash(content: str, algorithm: str = "sha256") -> str:
    """Return a CSP source expression ('sha256-...') allowing one inline script."""
    if algorithm not in ("sha256", "sha384", "sha512"):
        raise ValueError(f"Unsupported CSP hash algorithm: {algorithm}")
    digest = hashlib.new(algorithm, content.encode("utf-8")).digest()
    return f"'{algorithm}-{base64.b64encode(digest).decode('ascii')}'"


def validate_security_headers(policy: SecurityHeadersPolicy, production: bool) -> tuple[bool, list[str]]:
    """Review a policy for weak settings. Returns (valid, warnings)."""
    warnings = []
    csp = policy.content_security_policy
    if csp:
        if "'unsafe-inline'" in csp and "'unsafe-eval'" in csp:
            warnings.append("CSP contains both 'unsafe-inline' and 'unsafe-eval' which reduces security")
        if "frame-ancestors" not in csp and "default-src 'none'" not in csp:
            warnings.append("CSP missing 'frame-ancestors' directive")
    else:
        warnings.append("Content-Security-Policy is disabled")
    if production and not policy.strict_transport_security:
        warnings.append("HSTS should be enabled in production")
    if policy.x_frame_options and policy.x_frame_options.upper() not in ("DENY", "SAMEORIGIN"):
        warnings.append("X-Frame-Options should be 'DENY' or 'SAMEORIGIN'")
    if not policy.x_content_type_options:
        warnings.append("X-Content-Type-Options: nosniff is disabled")
    return not warnings, warnings
