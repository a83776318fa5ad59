"""
api/cors.py -- Per-route CORS policies.

Starlette's CORSMiddleware is app-wide; the auth routes need a tighter policy
than the rest of the API (POST/OPTIONS only, short preflight cache, no
cross-origin callers at all outside development), so policies are applied by
the defense pipeline (api/pipeline.py) per route instead.

Rules:
  - Access-Control-Allow-Origin echoes the request Origin only when allowed.
    A literal "*" policy sends "*".
  - Disallowed origins get no Allow-Origin header; the browser blocks the
    response. The attempt is logged under authguard.cors.
  - Allow-Methods / Allow-Headers / Expose-Headers / Max-Age / Allow-Credentials
    are always set from the policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import urlparse

from starlette.responses import Response

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authguard.cors")

OriginRule = str | list[str] | Callable[[str], bool] | None

DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]
VALID_METHODS = {"GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"}

_DEFAULT_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-API-Key",
    "X-Client-Version",
    "Accept",
    "Origin",
    "Cache-Control",
]
_RATE_LIMIT_HEADERS = ["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"]


@dataclass(frozen=True)
class CorsPolicy:
    origins: OriginRule = None
    methods: list[str] = field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"])
    allowed_headers: list[str] = field(default_factory=lambda: list(_DEFAULT_ALLOWED_HEADERS))
    exposed_headers: list[str] = field(default_factory=lambda: list(_RATE_LIMIT_HEADERS))
    credentials: bool = True
    max_age: int = 86400

    def is_origin_allowed(self, origin: str) -> bool:
        rule = self.origins
        if not rule:
            return False
        if isinstance(rule, str):
            return rule == "*" or rule == origin
        if callable(rule):
            return bool(rule(origin))
        return "*" in rule or origin in rule

    def headers_for(self, origin: str | None) -> dict[str, str]:
        headers = {}
        if origin and self.is_origin_allowed(origin):
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        elif self.origins == "*":
            headers["Access-Control-Allow-Origin"] = "*"
        elif origin:
            logger.warning("CORS origin rejected: %s", origin)

        if self.credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        if self.methods:
            headers["Access-Control-Allow-Methods"] = ", ".join(self.methods)
        if self.allowed_headers:
            headers["Access-Control-Allow-Headers"] = ", ".join(self.allowed_headers)
        if self.exposed_headers:
            headers["Access-Control-Expose-Headers"] = ", ".join(self.exposed_headers)
        if self.max_age:
            headers["Access-Control-Max-Age"] = str(self.max_age)
        return headers

    def apply(self, response: Any, request: Any) -> Any:
        response.headers.update(self.headers_for(request.headers.get("origin")))
        return response

    def preflight_response(self, request: Any) -> Response:
        """Empty 200 answer to an OPTIONS preflight."""
        return self.apply(Response(status_code=200), request)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def _configured_origins(settings: Settings) -> list[str]:
    origins = list(settings.cors_origins)
    if settings.app_url and settings.app_url not in origins:
        origins.append(settings.app_url.rstrip("/"))
    return origins


def is_local_origin(origin: str) -> bool:
    parsed = urlparse(origin)
    return parsed.scheme in ("http", "https") and parsed.hostname in ("localhost", "127.0.0.1", "::1")


def auth_cors_policy(settings: Settings) -> CorsPolicy:
    """Auth routes: configured origins only in production, any localhost origin otherwise."""
    origins: OriginRule = list(settings.cors_origins) if settings.is_production else is_local_origin
    return CorsPolicy(
        origins=origins or None,
        methods=["POST", "OPTIONS"],
        allowed_headers=["Content-Type", "Authorization"],
        exposed_headers=list(_RATE_LIMIT_HEADERS),
        credentials=True,
        max_age=300,
    )


def api_cors_policy(settings: Settings) -> CorsPolicy:
    origins = _configured_origins(settings) if settings.is_production else DEV_ORIGINS + _configured_origins(settings)
    return CorsPolicy(
        origins=origins,
        methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allowed_headers=["Content-Type", "Authorization", "X-API-Key", "X-Requested-With"],
        exposed_headers=list(_RATE_LIMIT_HEADERS),
    )


def validate_cors_config(policy: CorsPolicy) -> tuple[bool, list[str]]:
    """Check origin URLs, method names and max_age. Returns (valid, errors)."""
    errors = []
    rule = policy.origins
    candidates = [rule] if isinstance(rule, str) else rule if isinstance(rule, list) else []
    for origin in candidates:
        if origin == "*":
            continue
        parsed = urlparse(origin)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(f"Invalid origin URL format: {origin}")
    for method in policy.methods:
        if method.upper() not in VALID_METHODS:
            errors.append(f"Invalid HTTP method: {method}")
    if policy.max_age < 0:
        errors.append("max_age must be a non-negative integer")
    if policy.credentials and rule == "*":
        errors.append("Wildcard origin cannot be combined with credentials")
    return not errors, errors
