"""
auth/dependencies.py -- Request authentication helpers for route handlers.

authenticate_request() is the soft variant: it returns the verified token
payload or None and never raises. Token failures are recorded in the auth
event log as invalid_token or token_expired so repeated probing from one
address trips the token_manipulation alert.

require_authenticated() wraps it and raises AuthenticationError (401) with a
generic message -- the client never learns whether the token was missing,
forged, of the wrong type, or expired.
"""

from __future__ import annotations

from typing import Any

from auth.audit import AuthEvent, AuthEventLogger
from auth.errors import AuthenticationError
from auth.models import TokenPayload
from auth.tokens import TokenExpiredError, TokenError, TokenService, get_token_from_request


def authenticate_request(request: Any, tokens: TokenService, audit: AuthEventLogger | None = None) -> TokenPayload | None:
    """Verify the request's access token (Bearer header first, then cookies)."""
    raw = get_token_from_request(request).access_token
    if not raw:
        return None
    try:
        return tokens.decode_access_token(raw)
    except TokenExpiredError as exc:
        if audit is not None:
            audit.log_event(AuthEvent.TOKEN_EXPIRED, request, success=False, error=str(exc))
    except TokenError as exc:
        if audit is not None:
            audit.log_event(AuthEvent.INVALID_TOKEN, request, success=False, error=str(exc))
    return None


def require_authenticated(request: Any, tokens: TokenService, audit: AuthEventLogger | None = None) -> TokenPayload:
    payload = authenticate_request(request, tokens, audit)
    if payload is None:
        raise AuthenticationError("Unauthorized - No valid token provided")
    return payload
