"""
api/routes/v1/auth.py -- Account and session REST endpoints.

Routes:
  POST /auth/signup              -- create an unverified account, send verification email; 201
  POST /auth/login               -- password login; sets access/refresh/legacy cookies
  POST /auth/logout              -- expires the auth cookies; 200
  GET  /auth/verify-email?token= -- confirm an address from the emailed link
  POST /auth/verify-email        -- resend the verification email (non-enumerating)
  GET  /auth/me                  -- current user profile (requires auth)
  POST /auth/password-strength   -- score a candidate password

Every route runs behind its DefensePipeline (api/components.py), which owns
rate limiting, CORS, security headers, body sanitization and error
translation. Handlers here only see a RequestContext and raise
AuthServiceError subclasses for client errors.

Security:
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [H2] Unknown email and wrong password return the identical 401 body.
  [H3] Resend-verification answers unknown and unverified addresses with the
       same 200 message so it cannot be used to discover accounts.
  [M5] Cache-Control: no-store on login responses.
  Blocking work (SQL, bcrypt, SMTP/HTTP email) runs in the threadpool.

Known limitation: logout is stateless. An access token captured before
logout stays valid until it expires; there is no server-side deny-list.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from api.components import AppComponents
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordStrengthData,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    ResendVerificationRequest,
    SignupData,
    SignupRequest,
    SignupResponse,
    UserView,
    parse_body,
)
from api.pipeline import RequestContext
from auth.audit import AuthEvent
from auth.dependencies import authenticate_request, require_authenticated
from auth.email import send_verification_email, send_welcome_email
from auth.errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from auth.models import User
from auth.tokens import authenticate_user, clear_auth_cookies, hash_password, new_verification_token, set_auth_cookies

logger = logging.getLogger("authguard.auth")

RESEND_MESSAGE = "If an account with that email exists and is unverified, a verification email has been sent."
SIGNUP_MESSAGE = "Account created successfully! Please check your email to verify your account."

router = APIRouter()


def _components(request: Request) -> AppComponents:
    return request.app.state.components


def _user_view(user: User) -> UserView:
    return UserView.model_validate(user.public_view() | {"last_login_at": user.last_login_at})


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


async def _signup(ctx: RequestContext) -> Response:
    c = _components(ctx.request)
    try:
        body = parse_body(SignupRequest, ctx.body)
    except ValidationError as exc:
        c.audit.log_event(
            AuthEvent.SIGNUP_ATTEMPT,
            ctx.request,
            success=False,
            error="Validation failed",
            duration_ms=ctx.elapsed_ms(),
            metadata={"errors": exc.extra.get("details", [])},
        )
        raise

    duplicate = ConflictError("User already exists with this email", code="EMAIL_EXISTS")
    if await run_in_threadpool(c.user_store.find_by_email, body.email) is not None:
        c.audit.log_signup(ctx.request, success=False, email=body.email, error="Email already exists")
        raise duplicate

    hashed = await run_in_threadpool(hash_password, body.password, c.settings.bcrypt_rounds)
    token = new_verification_token()
    candidate = User(
        email=body.email,
        hashed_password=hashed,
        name=body.name,
        verification_token=token,
        token_expires_at=c.clock() + timedelta(hours=c.settings.verification_token_expire_hours),
    )
    try:
        user = await run_in_threadpool(c.user_store.create, candidate)
    except IntegrityError:
        # Lost a race with a concurrent signup for the same address.
        c.audit.log_signup(ctx.request, success=False, email=body.email, error="Email already exists")
        raise duplicate from None

    email_sent = await run_in_threadpool(
        send_verification_email, c.email_sender, user.email, user.name, token, c.settings.app_url
    )
    if not email_sent:
        logger.warning("Verification email for new user %s was not delivered", user.id)

    c.audit.log_signup(ctx.request, success=True, user_id=user.id, email=user.email, duration_ms=ctx.elapsed_ms())
    c.audit.log_event(
        AuthEvent.SIGNUP_SUCCESS,
        ctx.request,
        success=True,
        user_id=user.id,
        email=user.email,
        metadata={"email_sent": email_sent, "requires_verification": True},
    )
    payload = SignupResponse(
        message=SIGNUP_MESSAGE,
        data=SignupData(email=user.email, name=user.name, email_verified=user.email_verified, email_sent=email_sent),
    )
    return JSONResponse(status_code=201, content=payload.wire())


@router.api_route("/auth/signup", methods=["POST", "OPTIONS"], status_code=201, tags=["Auth"])
async def signup(request: Request) -> Response:
    return await _components(request).pipelines["signup"].run(request, _signup)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


async def _login(ctx: RequestContext) -> Response:
    """Authenticate with email and password; set the token cookies.

    Uses authenticate_user() which includes timing equalization [C1]. The 403
    for an unverified address is only reachable with the right password, so
    it does not leak account existence to a guesser.
    """
    c = _components(ctx.request)
    try:
        body = parse_body(LoginRequest, ctx.body)
    except ValidationError:
        c.audit.log_login(ctx.request, success=False, error="Validation failed", duration_ms=ctx.elapsed_ms())
        raise

    user = await run_in_threadpool(
        authenticate_user, c.user_store, body.email, body.password, c.settings.bcrypt_rounds
    )
    if user is None:
        c.audit.log_login(
            ctx.request, success=False, email=body.email, error="Invalid credentials", duration_ms=ctx.elapsed_ms()
        )
        raise AuthenticationError("Invalid email or password", code="INVALID_CREDENTIALS")  # [H2]

    if not user.email_verified:
        c.audit.log_login(
            ctx.request,
            success=False,
            user_id=user.id,
            email=user.email,
            error="Email not verified",
            duration_ms=ctx.elapsed_ms(),
        )
        raise AuthorizationError(
            "Please verify your email before logging in",
            code="EMAIL_NOT_VERIFIED",
            data={"email": user.email, "requiresVerification": True},
        )

    pair = c.token_service.create_token_pair(user.id, user.email)
    await run_in_threadpool(c.user_store.update_last_login, user.id)
    c.audit.log_login(
        ctx.request,
        success=True,
        user_id=user.id,
        email=user.email,
        session_id=pair.session_id,
        duration_ms=ctx.elapsed_ms(),
    )

    resp = JSONResponse(status_code=200, content=LoginResponse(user=_user_view(user), token=pair.access_token).wire())
    set_auth_cookies(
        resp,
        pair,
        secure=c.settings.cookie_secure,
        access_max_age=c.settings.access_token_expire_seconds,
        refresh_max_age=c.settings.refresh_token_expire_seconds,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.api_route("/auth/login", methods=["POST", "OPTIONS"], tags=["Auth"])
async def login(request: Request) -> Response:
    return await _components(request).pipelines["login"].run(request, _login)


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


async def _logout(ctx: RequestContext) -> Response:
    c = _components(ctx.request)
    payload = authenticate_request(ctx.request, c.token_service)
    if payload is not None:
        c.audit.log_logout(ctx.request, user_id=payload.user_id, session_id=payload.session_id)
    resp = JSONResponse(status_code=200, content=MessageResponse(message="Logout successful").wire())
    clear_auth_cookies(resp, secure=c.settings.cookie_secure)
    return resp


@router.api_route("/auth/logout", methods=["POST", "OPTIONS"], tags=["Auth"])
async def logout(request: Request) -> Response:
    """Expire the auth cookies. Tokens already issued stay valid until expiry."""
    return await _components(request).pipelines["logout"].run(request, _logout)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


async def _verify_email(ctx: RequestContext) -> Response:
    c = _components(ctx.request)
    token = ctx.request.query_params.get("token", "").strip()
    if not token:
        c.audit.log_suspicious_activity(ctx.request, "Email verification attempted without token")
        raise ValidationError("Invalid verification link", message="Verification token is required")

    user = await run_in_threadpool(c.user_store.find_by_verification_token, token)
    if user is None:
        c.audit.log_suspicious_activity(ctx.request, "Invalid verification token used")
        raise ValidationError(
            "Invalid verification link", message="This verification link is invalid or has already been used"
        )

    if user.email_verified:
        content = {"success": True, "message": "Email already verified", "data": {"email": user.email, "verified": True}}
        return JSONResponse(status_code=200, content=content)

    if user.token_expires_at is not None and c.clock() > user.token_expires_at:
        c.audit.log_event(
            AuthEvent.SUSPICIOUS_ACTIVITY,
            ctx.request,
            success=False,
            user_id=user.id,
            error="Expired verification token used",
        )
        raise ValidationError(
            "Verification link expired",
            code="VERIFICATION_EXPIRED",
            message="This verification link has expired. Please request a new one.",
        )

    await run_in_threadpool(
        c.user_store.update, user.id, email_verified=True, verification_token=None, token_expires_at=None
    )
    welcome_sent = await run_in_threadpool(send_welcome_email, c.email_sender, user.email, user.name, c.settings.app_url)
    c.audit.log_event(
        AuthEvent.EMAIL_VERIFIED,
        ctx.request,
        success=True,
        user_id=user.id,
        email=user.email,
        metadata={"welcome_email_sent": welcome_sent},
    )
    content = {
        "success": True,
        "message": "Email verified successfully! You can now log in.",
        "data": {"email": user.email, "verified": True, "name": user.name},
    }
    return JSONResponse(status_code=200, content=content)


async def _resend_verification(ctx: RequestContext) -> Response:
    c = _components(ctx.request)
    body = parse_body(ResendVerificationRequest, ctx.body)
    generic = JSONResponse(status_code=200, content=MessageResponse(message=RESEND_MESSAGE).wire())

    user = await run_in_threadpool(c.user_store.find_by_email, body.email)
    if user is None:
        return generic  # [H3]
    if user.email_verified:
        raise ValidationError("Email already verified", code="EMAIL_ALREADY_VERIFIED")

    token = new_verification_token()
    expires_at = c.clock() + timedelta(hours=c.settings.verification_token_expire_hours)
    await run_in_threadpool(c.user_store.update, user.id, verification_token=token, token_expires_at=expires_at)
    email_sent = await run_in_threadpool(
        send_verification_email, c.email_sender, user.email, user.name, token, c.settings.app_url
    )
    c.audit.log_event(
        AuthEvent.VERIFICATION_RESENT,
        ctx.request,
        success=True,
        user_id=user.id,
        email=user.email,
        metadata={"email_sent": email_sent},
    )
    return generic


@router.api_route("/auth/verify-email", methods=["GET", "POST", "OPTIONS"], tags=["Auth"])
async def verify_email(request: Request) -> Response:
    """GET confirms a token from the emailed link; POST resends the link."""
    components = _components(request)
    if request.method == "GET":
        return await components.pipelines["verify_email"].run(request, _verify_email)
    return await components.pipelines["resend_verification"].run(request, _resend_verification)


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


async def _me(ctx: RequestContext) -> Response:
    c = _components(ctx.request)
    payload = require_authenticated(ctx.request, c.token_service, c.audit)
    user = await run_in_threadpool(c.user_store.find_by_id, payload.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return JSONResponse(status_code=200, content=MeResponse(user=_user_view(user)).wire())


@router.api_route("/auth/me", methods=["GET", "OPTIONS"], tags=["Auth"])
async def me(request: Request) -> Response:
    return await _components(request).pipelines["me"].run(request, _me)


# ---------------------------------------------------------------------------
# Password strength
# ---------------------------------------------------------------------------


async def _password_strength(ctx: RequestContext) -> Response:
    c = _components(ctx.request)
    body = parse_body(PasswordStrengthRequest, ctx.body)
    result = c.password_checker.check(body.password, body.personal_info)
    data = PasswordStrengthData(
        score=result.score,
        strength=result.strength,
        entropy=result.entropy,
        is_valid=result.is_valid,
        feedback=result.feedback,
        suggestions=result.suggestions,
        estimated_crack_time=result.time_to_crack,
    )
    return JSONResponse(status_code=200, content=PasswordStrengthResponse(data=data).wire())


@router.api_route("/auth/password-strength", methods=["POST", "OPTIONS"], tags=["Auth"])
async def password_strength(request: Request) -> Response:
    return await _components(request).pipelines["password_strength"].run(request, _password_strength)
