"""
auth/tokens.py -- JWT issuance/verification, password hashing and auth cookies.

Security design decisions:
  JWT: python-jose with HS256. Access tokens (15 min) and refresh tokens
       (7 days) are signed with separate secrets; the refresh secret falls
       back to the access secret when unset, which keeps single-secret
       deployments working but is not a security boundary. Every token
       carries iss/aud, a unique jti, a type tag and a session id shared by
       the pair minted at login. A token is only accepted where its type tag
       matches the expected type.

       Expiry is checked against the injected clock, not inside jose, so
       tests can move time without re-signing. jose still verifies signature,
       issuer and audience.

       verify_* return None on any failure -- route layer turns that into a
       401. decode_* raise TokenExpiredError / InvalidTokenError for callers
       that need to tell the two apart (audit logging). There is no
       server-side revocation: a token stays valid until it expires, even
       after logout.

  Passwords: bcrypt used directly, cost factor from settings (12 default).
       Input is truncated to bcrypt's 72-byte limit before hashing and
       checking so long passphrases behave consistently across bcrypt
       releases. _dummy_hash() enables timing equalization in
       authenticate_user() so response time does not reveal whether an
       email is registered [C1].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from auth.models import RequestTokens, TokenPair, TokenPayload
from core.clock import Clock, utcnow

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("authguard.auth")

_ALGORITHM = "HS256"
_BCRYPT_MAX_BYTES = 72

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

ACCESS_COOKIE = "access-token"
REFRESH_COOKIE = "refresh-token"
# Mirrors the access token for clients that predate the token pair.
LEGACY_COOKIE = "auth-token"

_REQUIRED_CLAIMS = ("user_id", "email", "type", "session_id", "jti")


class TokenError(Exception):
    """Base class for token verification failures."""


class InvalidTokenError(TokenError):
    """Bad signature, wrong issuer/audience/type, or malformed claims."""


class TokenExpiredError(TokenError):
    """Signature is fine but the token is past its exp claim."""


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _password_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_password_bytes(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store; treat as a mismatch.
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    # Same cost factor as real hashes so both branches of authenticate_user take equal time.
    return hash_password("authguard_timing_dummy", rounds)


def authenticate_user(store: UserStore, email: str, password: str, rounds: int = 12) -> User | None:
    """Check an email/password pair with timing equalization [C1].

    Always runs bcrypt whether or not the account exists:
    - Unknown email: bcrypt runs against _dummy_hash (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure. Verification status is
    NOT checked here -- the login route reports unverified accounts separately
    once the password has been proven.
    """
    user = store.find_by_email(email)
    if user is None:
        verify_password(password, _dummy_hash(rounds))
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Mints and verifies access/refresh JWTs.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        pair = tokens.create_token_pair(user.id, user.email)
        payload = tokens.verify_access_token(pair.access_token)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str | None = None,
        *,
        issuer: str = "authguard",
        audience: str = "authguard-users",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        if not access_secret:
            raise ValueError("access_secret must not be empty")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret or access_secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utcnow) -> TokenService:
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret or None,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign_access_token(self, user_id: str, email: str, session_id: str | None = None) -> str:
        return self._sign(user_id, email, ACCESS_TOKEN_TYPE, session_id, self._access_secret, self.access_ttl)

    def sign_refresh_token(self, user_id: str, email: str, session_id: str | None = None) -> str:
        return self._sign(user_id, email, REFRESH_TOKEN_TYPE, session_id, self._refresh_secret, self.refresh_ttl)

    def create_token_pair(self, user_id: str, email: str) -> TokenPair:
        """Mint an access and a refresh token bound to one fresh session id."""
        session_id = str(uuid.uuid4())
        return TokenPair(
            access_token=self.sign_access_token(user_id, email, session_id),
            refresh_token=self.sign_refresh_token(user_id, email, session_id),
            session_id=session_id,
        )

    def _sign(self, user_id: str, email: str, token_type: str, session_id: str | None, secret: str, ttl: timedelta) -> str:
        now = self._clock()
        claims = {
            "sub": user_id,
            "user_id": user_id,
            "email": email,
            "type": token_type,
            "session_id": session_id or str(uuid.uuid4()),
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(claims, secret, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def decode_token(self, token: str, expected_type: str) -> TokenPayload:
        """Verify a token and return its payload, raising TokenError on failure."""
        secret = self._refresh_secret if expected_type == REFRESH_TOKEN_TYPE else self._access_secret
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidTokenError(str(exc)) from exc

        if any(name not in claims for name in _REQUIRED_CLAIMS):
            raise InvalidTokenError("missing required claims")
        if claims["type"] != expected_type:
            raise InvalidTokenError(f"expected {expected_type} token, got {claims['type']!r}")

        payload = _payload_from_claims(claims)
        if self.is_token_expired(payload):
            raise TokenExpiredError("token has expired")
        return payload

    def decode_access_token(self, token: str) -> TokenPayload:
        return self.decode_token(token, ACCESS_TOKEN_TYPE)

    def decode_refresh_token(self, token: str) -> TokenPayload:
        return self.decode_token(token, REFRESH_TOKEN_TYPE)

    def verify_token(self, token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> TokenPayload | None:
        """Return the payload or None. Never raises for a bad token."""
        try:
            return self.decode_token(token, expected_type)
        except TokenError as exc:
            logger.debug("Token verification failed (%s): %s", expected_type, exc)
            return None

    def verify_access_token(self, token: str) -> TokenPayload | None:
        return self.verify_token(token, ACCESS_TOKEN_TYPE)

    def verify_refresh_token(self, token: str) -> TokenPayload | None:
        return self.verify_token(token, REFRESH_TOKEN_TYPE)

    # ------------------------------------------------------------------
    # Expiry helpers
    # ------------------------------------------------------------------

    def is_token_expired(self, payload: TokenPayload) -> bool:
        """A payload without an expiry counts as expired."""
        if payload.expires_at is None:
            return True
        return self._clock() >= payload.expires_at

    def is_token_expiring_soon(self, payload: TokenPayload, buffer_minutes: int = 5) -> bool:
        if payload.expires_at is None:
            return True
        return self._clock() + timedelta(minutes=buffer_minutes) >= payload.expires_at


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _payload_from_claims(claims: dict[str, Any]) -> TokenPayload:
    audience = claims.get("aud", "")
    return TokenPayload(
        user_id=str(claims["user_id"]),
        email=str(claims["email"]),
        type=claims["type"],
        session_id=str(claims["session_id"]),
        token_id=str(claims["jti"]),
        issuer=claims.get("iss", ""),
        audience=audience if isinstance(audience, str) else ",".join(audience),
        issued_at=_timestamp(claims.get("iat")),
        expires_at=_timestamp(claims.get("exp")),
    )


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------


def extract_token_info(token: str) -> dict[str, Any] | None:
    """Decode header and claims WITHOUT verifying the signature.

    Debugging aid only -- never make an authorization decision on the result.
    """
    try:
        return {"header": jwt.get_unverified_header(token), "payload": jwt.get_unverified_claims(token)}
    except JWTError:
        return None


def generate_secure_secret() -> str:
    """Return 32 random bytes as 64 hex characters, suitable for JWT_SECRET."""
    return secrets.token_hex(32)


def new_verification_token() -> str:
    """Opaque single-use email verification token (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Request / cookie helpers
# ---------------------------------------------------------------------------


def get_token_from_request(request: Any) -> RequestTokens:
    """Collect raw tokens from a request.

    Access token precedence: Authorization: Bearer header, then the
    access-token cookie, then the legacy auth-token cookie. The refresh token
    only travels in its cookie.
    """
    access: str | None = None
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        access = credentials.strip()
    if not access:
        access = request.cookies.get(ACCESS_COOKIE) or request.cookies.get(LEGACY_COOKIE) or None
    return RequestTokens(access_token=access, refresh_token=request.cookies.get(REFRESH_COOKIE) or None)


def set_auth_cookies(response: Any, pair: TokenPair, *, secure: bool, access_max_age: int, refresh_max_age: int) -> None:
    """Write the token pair (plus the legacy mirror) as httpOnly cookies.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS in production.
    max_age: matches the JWT expiry so both expire together.
    """
    for name, value, max_age in (
        (ACCESS_COOKIE, pair.access_token, access_max_age),
        (REFRESH_COOKIE, pair.refresh_token, refresh_max_age),
        (LEGACY_COOKIE, pair.access_token, access_max_age),
    ):
        response.set_cookie(name, value=value, httponly=True, samesite="lax", secure=secure, max_age=max_age, path="/")


def clear_auth_cookies(response: Any, *, secure: bool) -> None:
    """Expire every auth cookie immediately (Max-Age=0)."""
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, LEGACY_COOKIE):
        response.set_cookie(name, value="", httponly=True, samesite="lax", secure=secure, max_age=0, path="/")
