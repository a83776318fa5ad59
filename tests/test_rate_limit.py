"""
tests/test_rate_limit.py -- Unit tests for api/limiter.py and core/net.py.

Coverage:
  - Fixed-window counting: allowed/remaining per hit, rejection past the ceiling
  - Window reset once wall-clock time passes the window (freezegun)
  - Scope and client-key independence
  - Concurrent hits on one key never lose an increment
  - Storage URI handling
  - Response headers and Retry-After
  - Client address precedence and loopback normalization
"""

from __future__ import annotations

import threading
from datetime import timedelta
from types import SimpleNamespace

import pytest
from freezegun.api import FrozenDateTimeFactory
from limits.errors import ConfigurationError

from api.limiter import API_POLICY, AUTH_POLICY, SIGNUP_POLICY, VERIFICATION_POLICY, RateLimiter, RateLimitPolicy, user_key
from core.net import UNKNOWN_CLIENT, client_ip, normalize_ip, user_agent


class TestFixedWindow:
    def test_counts_down_then_rejects(self) -> None:
        """Five logins are allowed per window; the sixth is rejected with remaining 0."""
        limiter = RateLimiter()
        remaining = [limiter.hit(AUTH_POLICY, "1.2.3.4").remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]
        result = limiter.hit(AUTH_POLICY, "1.2.3.4")
        assert not result.allowed
        assert result.remaining == 0
        assert result.count == 6

    def test_window_resets(self, frozen: FrozenDateTimeFactory) -> None:
        """Once the window has elapsed the counter starts over."""
        limiter = RateLimiter()
        for _ in range(4):
            limiter.hit(SIGNUP_POLICY, "ip")
        assert not limiter.hit(SIGNUP_POLICY, "ip").allowed
        frozen.tick(timedelta(minutes=59))
        assert not limiter.hit(SIGNUP_POLICY, "ip").allowed
        frozen.tick(timedelta(minutes=1))
        result = limiter.hit(SIGNUP_POLICY, "ip")
        assert result.allowed
        assert result.count == 1

    def test_reset_time_is_fixed_within_window(self, frozen: FrozenDateTimeFactory) -> None:
        """Later hits in a window do not push the reset time out."""
        limiter = RateLimiter()
        first = limiter.hit(API_POLICY, "ip")
        frozen.tick(timedelta(minutes=5))
        second = limiter.hit(API_POLICY, "ip")
        assert first.reset_at == second.reset_at

    def test_scopes_and_keys_are_independent(self) -> None:
        """Exhausting one scope or one client leaves the others untouched."""
        limiter = RateLimiter()
        for _ in range(6):
            limiter.hit(AUTH_POLICY, "attacker")
        assert not limiter.hit(AUTH_POLICY, "attacker").allowed
        assert limiter.hit(AUTH_POLICY, "bystander").allowed
        assert limiter.hit(API_POLICY, "attacker").allowed
        assert limiter.hit(VERIFICATION_POLICY, "attacker").allowed

    def test_user_keys(self) -> None:
        """user_key() namespaces account-based limits away from addresses."""
        limiter = RateLimiter()
        policy = RateLimitPolicy("per_user", 1, 60)
        assert user_key("42") == "user:42"
        assert limiter.hit(policy, user_key("42")).allowed
        assert not limiter.hit(policy, user_key("42")).allowed
        assert limiter.hit(policy, "42").allowed

    def test_reset_clears_one_counter(self) -> None:
        """reset() forgets a single (scope, key) counter."""
        limiter = RateLimiter()
        policy = RateLimitPolicy("tiny", 1, 60)
        limiter.hit(policy, "ip")
        limiter.hit(policy, "other")
        assert not limiter.hit(policy, "ip").allowed
        limiter.reset(policy, "ip")
        assert limiter.hit(policy, "ip").allowed
        assert not limiter.hit(policy, "other").allowed


class TestConcurrency:
    def test_no_lost_increments(self) -> None:
        """Concurrent hits on one key are all counted and exactly `limit` are allowed."""
        limiter = RateLimiter()
        policy = RateLimitPolicy("burst", 50, 60)
        allowed: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(25):
                result = limiter.hit(policy, "shared")
                with lock:
                    allowed.append(result.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(allowed) == 200
        assert sum(allowed) == 50
        assert limiter.hit(policy, "shared").count == 201


class TestStorage:
    def test_policy_maps_to_limits_item(self) -> None:
        assert AUTH_POLICY.item.amount == 5
        assert AUTH_POLICY.item.get_expiry() == 900
        assert SIGNUP_POLICY.item.get_expiry() == 3600

    def test_unknown_storage_scheme(self) -> None:
        with pytest.raises(ConfigurationError):
            RateLimiter("carrier-pigeon://coop")


class TestHeaders:
    def test_headers_and_retry_after(self, frozen: FrozenDateTimeFactory) -> None:
        """X-RateLimit-* headers report limit, remaining and the reset epoch."""
        limiter = RateLimiter()
        start = limiter.now()
        result = limiter.hit(AUTH_POLICY, "ip")
        headers = result.headers()
        assert headers["X-RateLimit-Limit"] == "5"
        assert headers["X-RateLimit-Remaining"] == "4"
        assert int(headers["X-RateLimit-Reset"]) == int(start) + 900
        frozen.tick(timedelta(minutes=10))
        assert result.retry_after(limiter.now()) == 300

    def test_retry_after_is_at_least_one(self) -> None:
        """Retry-After never reports zero seconds."""
        limiter = RateLimiter()
        result = limiter.hit(AUTH_POLICY, "ip")
        assert result.retry_after(result.reset_at + 5) == 1


class TestClientAddress:
    @staticmethod
    def _req(headers: dict, host: str | None = "9.9.9.9") -> SimpleNamespace:
        client = SimpleNamespace(host=host) if host else None
        return SimpleNamespace(headers={k.lower(): v for k, v in headers.items()}, client=client)

    def test_forwarded_for_first_entry_wins(self) -> None:
        """X-Forwarded-For beats every other source; its first entry is the client."""
        req = self._req({"X-Forwarded-For": "1.1.1.1, 10.0.0.1", "X-Real-IP": "2.2.2.2"})
        assert client_ip(req) == "1.1.1.1"

    def test_precedence_chain(self) -> None:
        """X-Real-IP, then X-Client-IP, then the peer address."""
        assert client_ip(self._req({"X-Real-IP": "2.2.2.2", "X-Client-IP": "3.3.3.3"})) == "2.2.2.2"
        assert client_ip(self._req({"X-Client-IP": "3.3.3.3"})) == "3.3.3.3"
        assert client_ip(self._req({})) == "9.9.9.9"
        assert client_ip(self._req({}, host=None)) == UNKNOWN_CLIENT

    def test_loopback_normalized(self) -> None:
        """IPv4 and IPv6 loopback share one key."""
        assert normalize_ip("127.0.0.1") == normalize_ip("::1") == "localhost"
        assert client_ip(self._req({}, host="::1")) == "localhost"

    def test_user_agent_default(self) -> None:
        """Missing User-Agent is recorded as 'unknown'."""
        assert user_agent(self._req({})) == "unknown"
        assert user_agent(self._req({"User-Agent": "curl/8"})) == "curl/8"
