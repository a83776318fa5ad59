"""
tests/test_store.py -- Unit tests for auth/store.py.

Coverage:
  - create() normalizes email and assigns id and timestamps
  - Case-insensitive lookups; lookups by id and verification token
  - UNIQUE(email) surfaces as IntegrityError
  - update() field allow-list, datetime round trip, unknown id
  - ping()
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore, normalize_email


def _user(email: str = "Alice@Example.com", **fields) -> User:
    return User(email=email, hashed_password="$2b$04$hash", **fields)


class TestCreate:
    def test_create_assigns_id_and_timestamps(self, store: UserStore) -> None:
        user = store.create(_user(name="Alice"))
        assert user.id
        assert user.email == "alice@example.com"
        assert user.created_at is not None
        assert user.created_at == user.updated_at
        assert user.email_verified is False

    def test_duplicate_email_differs_only_in_case(self, store: UserStore) -> None:
        """UNIQUE(email) applies after normalization."""
        store.create(_user())
        with pytest.raises(IntegrityError):
            store.create(_user(" ALICE@example.COM "))

    def test_normalize_email(self) -> None:
        assert normalize_email("  Bob@X.IO ") == "bob@x.io"


class TestQueries:
    def test_find_by_email_case_insensitive(self, store: UserStore) -> None:
        created = store.create(_user())
        found = store.find_by_email("ALICE@EXAMPLE.COM")
        assert found is not None
        assert found.id == created.id
        assert found.hashed_password == "$2b$04$hash"

    def test_find_missing(self, store: UserStore) -> None:
        assert store.find_by_email("nobody@example.com") is None
        assert store.find_by_id("no-such-id") is None

    def test_find_by_verification_token(self, store: UserStore) -> None:
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        created = store.create(_user(verification_token="tok-123", token_expires_at=expires))
        found = store.find_by_verification_token("tok-123")
        assert found is not None
        assert found.id == created.id
        assert found.token_expires_at == expires
        assert store.find_by_verification_token("") is None
        assert store.find_by_verification_token("other") is None


class TestUpdate:
    def test_verify_flow_fields(self, store: UserStore) -> None:
        """Marking verified and clearing the token persists both."""
        created = store.create(_user(verification_token="tok", token_expires_at=datetime.now(timezone.utc)))
        updated = store.update(created.id, email_verified=True, verification_token=None, token_expires_at=None)
        assert updated is not None
        assert updated.email_verified is True
        assert updated.verification_token is None
        assert updated.token_expires_at is None
        assert updated.updated_at >= created.updated_at

    def test_naive_datetime_stored_as_utc(self, store: UserStore) -> None:
        created = store.create(_user())
        naive = datetime(2026, 5, 1, 8, 30)
        updated = store.update(created.id, last_login_at=naive)
        assert updated.last_login_at == naive.replace(tzinfo=timezone.utc)

    def test_unknown_field_rejected(self, store: UserStore) -> None:
        created = store.create(_user())
        with pytest.raises(ValueError):
            store.update(created.id, email="new@example.com")

    def test_unknown_id(self, store: UserStore) -> None:
        assert store.update("missing", name="x") is None

    def test_update_last_login(self, store: UserStore) -> None:
        created = store.create(_user())
        assert created.last_login_at is None
        store.update_last_login(created.id)
        found = store.find_by_id(created.id)
        assert found.last_login_at is not None
        assert datetime.now(timezone.utc) - found.last_login_at < timedelta(minutes=1)


class TestLifecycle:
    def test_ping(self, store: UserStore) -> None:
        assert store.ping() is True

    def test_ping_after_failure(self, store: UserStore, monkeypatch: pytest.MonkeyPatch) -> None:
        from sqlalchemy.exc import OperationalError

        def broken_connect(self):
            raise OperationalError("SELECT 1", {}, Exception("down"))

        monkeypatch.setattr(type(store.engine), "connect", broken_connect)
        assert store.ping() is False
