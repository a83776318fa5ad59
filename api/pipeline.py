"""
api/pipeline.py -- Ordered request-defense pipeline for the auth routes.

Pattern: Chain of Responsibility as a flat list. Each route declares its
stages once (api/components.py) instead of nesting decorators:

    request -> RateLimitStage -> CorsStage -> SecurityHeadersStage -> SanitizeStage -> handler

Stage contract:
  before(ctx)          -> Response to short-circuit, or None to continue
  after(ctx, response) -> response (decorate headers and return it)

before() hooks run in declaration order and stop at the first Response or
AuthServiceError. after() hooks of EVERY stage then run in reverse order on
whatever response was produced, so a 429, a preflight answer or a validation
error still carries rate-limit, CORS and security headers.

Error translation:
  AuthServiceError -> its status and {"success": false, "error", "code", ...}
  anything else    -> logged with traceback, recorded in the auth event log as
                      the route's failure event, returned as an opaque 500
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from api.cors import CorsPolicy
from api.limiter import RateLimiter, RateLimitPolicy, RateLimitResult
from api.security_headers import SecurityHeadersPolicy
from auth.audit import AuthEvent, AuthEventLogger
from auth.errors import AuthServiceError, InternalError, RateLimitError, ValidationError
from core.net import client_ip
from core.sanitizer import InputSanitizer

logger = logging.getLogger("authguard.api")

_BODY_METHODS = ("POST", "PUT", "PATCH")


@dataclass
class RequestContext:
    """Per-request state shared by the stages and the handler."""

    request: Request
    client_ip: str
    started_at: float = field(default_factory=time.perf_counter)
    rate_limit: RateLimitResult | None = None
    preflight: bool = False
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def method(self) -> str:
        return self.request.method.upper()

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000


Handler = Callable[[RequestContext], Awaitable[Response]]


class Stage:
    """No-op base; subclasses override one or both hooks."""

    name = "stage"

    async def before(self, ctx: RequestContext) -> Response | None:
        return None

    def after(self, ctx: RequestContext, response: Response) -> Response:
        return response


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class RateLimitStage(Stage):
    """Charge one hit against the policy scope for the client address.

    OPTIONS preflights are not charged. Rejections raise RateLimitError (429
    with Retry-After) and are recorded as rate_limit_exceeded.
    """

    name = "rate_limit"

    def __init__(self, limiter: RateLimiter, policy: RateLimitPolicy, audit: AuthEventLogger | None = None) -> None:
        self.limiter = limiter
        self.policy = policy
        self.audit = audit

    async def before(self, ctx: RequestContext) -> Response | None:
        if ctx.method == "OPTIONS":
            return None
        result = self.limiter.hit(self.policy, ctx.client_ip)
        ctx.rate_limit = result
        if not result.allowed:
            if self.audit is not None:
                self.audit.log_rate_limit(ctx.request, scope=self.policy.name, limit=self.policy.max_requests)
            raise RateLimitError(result.retry_after(self.limiter.now()))
        return None

    def after(self, ctx: RequestContext, response: Response) -> Response:
        if ctx.rate_limit is not None:
            response.headers.update(ctx.rate_limit.headers())
        return response


class CorsStage(Stage):
    name = "cors"

    def __init__(self, policy: CorsPolicy) -> None:
        self.policy = policy

    async def before(self, ctx: RequestContext) -> Response | None:
        if ctx.method == "OPTIONS":
            ctx.preflight = True
            return self.policy.preflight_response(ctx.request)
        return None

    def after(self, ctx: RequestContext, response: Response) -> Response:
        # Preflight answers already carry the policy headers.
        if ctx.preflight:
            return response
        return self.policy.apply(response, ctx.request)


class SecurityHeadersStage(Stage):
    name = "security_headers"

    def __init__(self, policy: SecurityHeadersPolicy) -> None:
        self.policy = policy

    def after(self, ctx: RequestContext, response: Response) -> Response:
        return self.policy.apply(response)


class SanitizeStage(Stage):
    """Parse the JSON body and sanitize every key and string leaf.

    Fields named in raw_fields (top level only) are passed through untouched:
    a password must reach bcrypt exactly as typed, and it is never echoed
    or stored in clear.
    """

    name = "sanitize"

    def __init__(self, sanitizer: InputSanitizer, raw_fields: Sequence[str] = ("password",)) -> None:
        self.sanitizer = sanitizer
        self.raw_fields = frozenset(raw_fields)

    async def before(self, ctx: RequestContext) -> Response | None:
        if ctx.method not in _BODY_METHODS:
            return None
        raw = await ctx.request.body()
        if not raw.strip():
            ctx.body = {}
            return None
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON body") from None
        if not isinstance(parsed, dict):
            raise ValidationError("Request body must be a JSON object")

        body: dict[str, Any] = {}
        for key, value in parsed.items():
            if key in self.raw_fields and isinstance(value, str):
                body[key] = value
            else:
                body[self.sanitizer.sanitize_string(key)] = self.sanitizer.sanitize_object(value)
        ctx.body = body
        return None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def error_response(exc: AuthServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)


class DefensePipeline:
    """Run a handler behind an ordered list of stages.

    Usage:
        pipeline = DefensePipeline([RateLimitStage(...), CorsStage(...)], audit, AuthEvent.LOGIN_FAILURE)
        return await pipeline.run(request, _login)
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        audit: AuthEventLogger | None = None,
        failure_event: AuthEvent | None = None,
    ) -> None:
        self.stages = list(stages)
        self.audit = audit
        self.failure_event = failure_event

    async def run(self, request: Request, handler: Handler) -> Response:
        ctx = RequestContext(request=request, client_ip=client_ip(request))
        response = await self._dispatch(ctx, handler)
        for stage in reversed(self.stages):
            response = stage.after(ctx, response)
        return response

    async def _dispatch(self, ctx: RequestContext, handler: Handler) -> Response:
        try:
            for stage in self.stages:
                short_circuit = await stage.before(ctx)
                if short_circuit is not None:
                    return short_circuit
            return await handler(ctx)
        except AuthServiceError as exc:
            return error_response(exc)
        except Exception as exc:
            logger.exception("Unhandled error on %s %s", ctx.method, ctx.request.url.path)
            if self.audit is not None and self.failure_event is not None:
                self.audit.log_event(
                    self.failure_event,
                    ctx.request,
                    success=False,
                    error="Internal server error",
                    duration_ms=ctx.elapsed_ms(),
                    metadata={"error_type": type(exc).__name__, "error_message": str(exc)},
                )
            return error_response(InternalError())
