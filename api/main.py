"""
api/main.py -- FastAPI application entry point for authguard.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. log_requests          -- one access-log line per request
  3. default_headers       -- baseline security headers on every response

CORS, rate limiting and sanitization are per-route concerns owned by the
defense pipelines in api/components.py, not app-wide middleware.

Lifespan handles startup (settings, components, audit flush task) and
shutdown (cancel flush task, final flush, close DB connection) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.components import build_components
from api.models import ComponentHealth, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.security_headers import default_headers
from core.config import get_settings
from core.net import client_ip

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authguard.api")

# ---------------------------------------------------------------------------
# Background flush task
# ---------------------------------------------------------------------------


async def _flush_loop(app: FastAPI, interval: float) -> None:
    """Write pending auth events to the audit logger every `interval` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        app.state.components.audit.flush()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the shared components on startup and tear them down on shutdown.

    Settings are resolved first so a missing JWT secret outside debug mode
    fails the boot before any route is reachable.
    """
    settings = get_settings()
    logger.info("authguard API starting up (environment=%s)", settings.environment)
    app.state.components = build_components(settings)
    logger.info("Components initialized (email provider=%s)", settings.email_provider)
    app.state.flush_task = asyncio.create_task(_flush_loop(app, settings.auth_log_flush_seconds))

    yield

    app.state.flush_task.cancel()
    app.state.components.close()
    logger.info("authguard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authguard API",
    description="Signup, login, email verification and session tokens behind a request-defense pipeline.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the LAST registered middleware
# is the outermost. @app.middleware("http") functions are registered at import
# time below, then TrustedHost is added last to sit in front of everything.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def apply_default_headers(request: Request, call_next):
    """Baseline security headers on every response.

    overwrite=False: routes behind a pipeline already carry their stricter
    auth/api profile and keep it.
    """
    response = await call_next(request)
    components = getattr(request.app.state, "components", None)
    policy = components.default_headers if components is not None else default_headers(False)
    return policy.apply(response, overwrite=False)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client_ip(request),
    )
    return response


app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_hosts)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router)


# ---------------------------------------------------------------------------
# Exception handlers
#
# Routes behind a DefensePipeline translate their own errors. These handlers
# give everything else (unknown paths, wrong methods, framework validation)
# the same {"success": false, "error", "code"} envelope.
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, "code": code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, "Validation failed", "VALIDATION_ERROR")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    codes = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail), "code": codes.get(exc.status_code, f"HTTP_{exc.status_code}")},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error", "INTERNAL_ERROR")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Liveness plus a database round-trip. 503 when the store is unreachable."""
    database_ok = await run_in_threadpool(request.app.state.components.user_store.ping)
    body = HealthResponse(
        success=database_ok,
        status="healthy" if database_ok else "unhealthy",
        version=VERSION,
        components=ComponentHealth(database="ok" if database_ok else "unavailable"),
    )
    return JSONResponse(status_code=200 if database_ok else 503, content=body.wire())
