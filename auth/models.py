"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond small derived
views). Stores, token service and routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass
class User:
    """A local account.

    email is stored case-folded and trimmed; the store enforces uniqueness.
    verification_token / token_expires_at are set at signup (and on resend)
    and cleared once the address is verified.
    """

    email: str
    hashed_password: str
    name: str | None = None
    id: str | None = None
    email_verified: bool = False
    verification_token: str | None = None
    token_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None

    def public_view(self) -> dict[str, Any]:
        """Fields safe to return to the account owner. Never includes the hash or token."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "email_verified": self.email_verified,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class TokenPayload:
    """Verified claims of an access or refresh token."""

    user_id: str
    email: str
    type: str  # "access" | "refresh"
    session_id: str
    token_id: str
    issuer: str
    audience: str
    issued_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str


@dataclass
class RequestTokens:
    """Raw tokens found on a request; either may be absent."""

    access_token: str | None = None
    refresh_token: str | None = None
