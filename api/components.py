"""
api/components.py -- Process-wide components, built once per application.

build_components() is called from the lifespan in api/main.py and the result
is stored on app.state.components. Route handlers reach every collaborator
through it; nothing in the API layer is a module-level singleton, so tests
get isolated state by building a fresh AppComponents.

Pipelines (api/pipeline.py), one per route:

  route                 rate-limit scope   CORS  headers  sanitize
  signup                signup             auth  auth     yes
  login                 auth               auth  auth     yes
  verify_email (GET)    api                api   api      -
  resend_verification   verification       auth  auth     yes
  me                    api                api   api      -
  logout                -                  auth  auth     -
  password_strength     api                api   api      yes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from api.cors import CorsPolicy, api_cors_policy, auth_cors_policy, validate_cors_config
from api.limiter import API_POLICY, AUTH_POLICY, SIGNUP_POLICY, VERIFICATION_POLICY, RateLimiter, RateLimitPolicy
from api.pipeline import CorsStage, DefensePipeline, RateLimitStage, SanitizeStage, SecurityHeadersStage, Stage
from api.security_headers import (
    SecurityHeadersPolicy,
    api_headers,
    auth_headers,
    default_headers,
    validate_security_headers,
)
from auth.audit import AuthEvent, AuthEventLogger
from auth.email import EmailSender, build_email_sender
from auth.store import UserStore
from auth.tokens import TokenService
from core.clock import Clock, utcnow
from core.config import Settings
from core.password_strength import PasswordStrengthChecker
from core.sanitizer import InputSanitizer, auth_sanitizer

logger = logging.getLogger("authguard.api")


@dataclass
class AppComponents:
    settings: Settings
    user_store: UserStore
    email_sender: EmailSender
    token_service: TokenService
    rate_limiter: RateLimiter
    audit: AuthEventLogger
    sanitizer: InputSanitizer
    password_checker: PasswordStrengthChecker
    auth_cors: CorsPolicy
    api_cors: CorsPolicy
    auth_headers: SecurityHeadersPolicy
    api_headers: SecurityHeadersPolicy
    default_headers: SecurityHeadersPolicy
    clock: Clock = utcnow
    pipelines: dict[str, DefensePipeline] = field(default_factory=dict)

    def close(self) -> None:
        self.audit.flush()
        self.user_store.close()


def _stages(
    c: AppComponents,
    policy: Optional[RateLimitPolicy],
    cors: CorsPolicy,
    headers: SecurityHeadersPolicy,
    sanitize: bool,
) -> list[Stage]:
    stages: list[Stage] = []
    if policy is not None:
        stages.append(RateLimitStage(c.rate_limiter, policy, c.audit))
    stages.append(CorsStage(cors))
    stages.append(SecurityHeadersStage(headers))
    if sanitize:
        stages.append(SanitizeStage(c.sanitizer))
    return stages


def _build_pipelines(c: AppComponents) -> dict[str, DefensePipeline]:
    auth = (c.auth_cors, c.auth_headers)
    api = (c.api_cors, c.api_headers)
    return {
        "signup": DefensePipeline(_stages(c, SIGNUP_POLICY, *auth, sanitize=True), c.audit, AuthEvent.SIGNUP_FAILURE),
        "login": DefensePipeline(_stages(c, AUTH_POLICY, *auth, sanitize=True), c.audit, AuthEvent.LOGIN_FAILURE),
        "verify_email": DefensePipeline(_stages(c, API_POLICY, *api, sanitize=False), c.audit),
        "resend_verification": DefensePipeline(_stages(c, VERIFICATION_POLICY, *auth, sanitize=True), c.audit),
        "me": DefensePipeline(_stages(c, API_POLICY, *api, sanitize=False), c.audit),
        "logout": DefensePipeline(_stages(c, None, *auth, sanitize=False), c.audit),
        "password_strength": DefensePipeline(_stages(c, API_POLICY, *api, sanitize=True), c.audit),
    }


def build_components(
    settings: Settings,
    *,
    user_store: UserStore | None = None,
    email_sender: EmailSender | None = None,
    clock: Clock = utcnow,
) -> AppComponents:
    """Construct every collaborator from settings. Overrides are for tests."""
    production = settings.is_production
    components = AppComponents(
        settings=settings,
        user_store=user_store or UserStore(settings.database_url),
        email_sender=email_sender or build_email_sender(settings),
        token_service=TokenService.from_settings(settings, clock=clock),
        rate_limiter=RateLimiter(settings.rate_limit_storage_uri),
        audit=AuthEventLogger(settings.auth_log_capacity, settings.auth_alert_capacity, clock=clock),
        sanitizer=auth_sanitizer,
        password_checker=PasswordStrengthChecker(),
        auth_cors=auth_cors_policy(settings),
        api_cors=api_cors_policy(settings),
        auth_headers=auth_headers(production),
        api_headers=api_headers(production),
        default_headers=default_headers(production),
        clock=clock,
    )
    components.pipelines = _build_pipelines(components)

    for name, cors in (("auth", components.auth_cors), ("api", components.api_cors)):
        valid, errors = validate_cors_config(cors)
        if not valid:
            logger.warning("CORS policy %s has problems: %s", name, "; ".join(errors))
    for name, headers in (("auth", components.auth_headers), ("api", components.api_headers)):
        valid, warnings = validate_security_headers(headers, production)
        if not valid:
            logger.warning("Security header policy %s has problems: %s", name, "; ".join(warnings))
    return components
