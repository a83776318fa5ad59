"""
auth/audit.py -- In-memory auth event log with threshold-based security alerts.

Every authentication-relevant event (login, signup, logout, token failures,
rate-limit hits) is appended to a bounded ring buffer. After each append the
alert rules scan the trailing window of the buffer:

  login_failure      same IP or same email, 5 min   >=3 medium multiple_login_failures
                                                     >=5 high   potential_brute_force
  signup_attempt     same IP, 60 min                 >=3 medium rapid_signup_attempts
  login_success      known user, unseen (user agent, ip) pair  low new_device_login
  invalid_token /
  token_expired      same IP, 60 min                 >=5 medium token_manipulation

High and critical alerts are logged at WARNING immediately and passed to the
optional alert_handler. Entries are written to the "authguard.audit" logger as
JSON lines when flush() runs -- the API lifespan schedules it every 30 seconds
and once more at shutdown. A burst that fills the pending queue between
scheduled flushes is written immediately, so no entry goes unwritten.

Known limitation: the buffer is process memory. A restart loses history and
a multi-instance deployment sees per-instance statistics only. This is abuse
detection, not a compliance audit trail.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from core.clock import Clock, utcnow
from core.net import client_ip, user_agent

logger = logging.getLogger("authguard.audit")


class AuthEvent(str, Enum):
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    SIGNUP_ATTEMPT = "signup_attempt"
    SIGNUP_SUCCESS = "signup_success"
    SIGNUP_FAILURE = "signup_failure"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    ACCOUNT_LOCKED = "account_locked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    EMAIL_VERIFIED = "email_verified"
    VERIFICATION_RESENT = "verification_resent"


class AlertLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class AuthLogEntry:
    timestamp: datetime
    event: AuthEvent
    ip: str
    user_agent: str
    success: bool
    user_id: str | None = None
    email: str | None = None
    error: str | None = None
    session_id: str | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["event"] = self.event.value
        return {k: v for k, v in data.items() if v is not None and v != {}}


@dataclass
class SecurityAlert:
    level: AlertLevel
    type: str
    message: str
    ip: str
    timestamp: datetime
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["level"] = self.level.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class AuthStats:
    total_events: int
    successful_logins: int
    failed_logins: int
    signups: int
    unique_ips: int
    alerts: int


_TIMEFRAMES = {"hour": timedelta(hours=1), "day": timedelta(days=1), "week": timedelta(weeks=1)}

_LOGIN_FAILURE_WINDOW = timedelta(minutes=5)
_SIGNUP_WINDOW = timedelta(minutes=60)
_TOKEN_WINDOW = timedelta(minutes=60)
_TOKEN_FAILURES = (AuthEvent.INVALID_TOKEN, AuthEvent.TOKEN_EXPIRED)


class AuthEventLogger:
    """Bounded auth event buffer plus derived security alerts.

    One instance per process, built at startup and shared by every route.
    A single lock guards both buffers; alert evaluation runs under it so two
    concurrent failures cannot both miss a threshold.
    """

    def __init__(
        self,
        capacity: int = 1000,
        alert_capacity: int = 100,
        *,
        clock: Clock = utcnow,
        alert_handler: Callable[[SecurityAlert], None] | None = None,
    ) -> None:
        self._entries: deque[AuthLogEntry] = deque(maxlen=capacity)
        self._alerts: deque[SecurityAlert] = deque(maxlen=alert_capacity)
        self._pending: list[AuthLogEntry] = []
        self._flush_threshold = capacity
        self._lock = threading.Lock()
        self._clock = clock
        self._alert_handler = alert_handler

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def log_event(
        self,
        event: AuthEvent | str,
        request: Any,
        *,
        success: bool,
        user_id: str | None = None,
        email: str | None = None,
        error: str | None = None,
        session_id: str | None = None,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuthLogEntry:
        """Build an entry from the request's client address and user agent and record it."""
        entry = AuthLogEntry(
            timestamp=self._clock(),
            event=AuthEvent(event),
            ip=client_ip(request) if request is not None else "unknown",
            user_agent=user_agent(request) if request is not None else "unknown",
            success=success,
            user_id=user_id,
            email=email,
            error=error,
            session_id=session_id,
            duration_ms=duration_ms,
            metadata=metadata or {},
        )
        self.record(entry)
        return entry

    def record(self, entry: AuthLogEntry) -> list[SecurityAlert]:
        """Append a prepared entry and return any alerts it triggered."""
        batch: list[AuthLogEntry] = []
        with self._lock:
            self._entries.append(entry)
            self._pending.append(entry)
            if len(self._pending) >= self._flush_threshold:
                batch, self._pending = self._pending, []
            alerts = self._derive_alerts(entry)
            self._alerts.extend(alerts)
        logger.debug("auth event %s success=%s ip=%s", entry.event.value, entry.success, entry.ip)
        if batch:
            logger.debug("pending audit queue full, writing %d entries early", len(batch))
            _write(batch)
        for alert in alerts:
            self._surface(alert)
        return alerts

    def log_login(
        self,
        request: Any,
        *,
        success: bool,
        user_id: str | None = None,
        email: str | None = None,
        error: str | None = None,
        session_id: str | None = None,
        duration_ms: float | None = None,
    ) -> AuthLogEntry:
        event = AuthEvent.LOGIN_SUCCESS if success else AuthEvent.LOGIN_FAILURE
        return self.log_event(
            event,
            request,
            success=success,
            user_id=user_id,
            email=email,
            error=error,
            session_id=session_id,
            duration_ms=duration_ms,
        )

    def log_signup(
        self,
        request: Any,
        *,
        success: bool,
        user_id: str | None = None,
        email: str | None = None,
        error: str | None = None,
        duration_ms: float | None = None,
    ) -> AuthLogEntry:
        return self.log_event(
            AuthEvent.SIGNUP_ATTEMPT,
            request,
            success=success,
            user_id=user_id,
            email=email,
            error=error,
            duration_ms=duration_ms,
        )

    def log_logout(self, request: Any, *, user_id: str | None = None, session_id: str | None = None) -> AuthLogEntry:
        return self.log_event(AuthEvent.LOGOUT, request, success=True, user_id=user_id, session_id=session_id)

    def log_rate_limit(self, request: Any, *, scope: str, limit: int) -> AuthLogEntry:
        return self.log_event(
            AuthEvent.RATE_LIMIT_EXCEEDED,
            request,
            success=False,
            error="Rate limit exceeded",
            metadata={"scope": scope, "limit": limit},
        )

    def log_suspicious_activity(self, request: Any, reason: str, metadata: dict[str, Any] | None = None) -> AuthLogEntry:
        return self.log_event(AuthEvent.SUSPICIOUS_ACTIVITY, request, success=False, error=reason, metadata=metadata)

    # ------------------------------------------------------------------
    # Alert rules
    # ------------------------------------------------------------------

    def _since(self, window: timedelta, now: datetime) -> list[AuthLogEntry]:
        cutoff = now - window
        return [e for e in self._entries if e.timestamp >= cutoff]

    def _derive_alerts(self, entry: AuthLogEntry) -> list[SecurityAlert]:
        now = entry.timestamp
        alerts: list[SecurityAlert] = []

        if entry.event is AuthEvent.LOGIN_FAILURE:
            count = sum(
                1
                for e in self._since(_LOGIN_FAILURE_WINDOW, now)
                if e.event is AuthEvent.LOGIN_FAILURE
                and (e.ip == entry.ip or (entry.email is not None and e.email == entry.email))
            )
            if count >= 3:
                message = f"{count} failed login attempts in 5 minutes"
                alerts.append(self._alert(AlertLevel.MEDIUM, "multiple_login_failures", message, entry, count=count))
            if count >= 5:
                message = f"Potential brute force attack: {count} failed attempts"
                alerts.append(self._alert(AlertLevel.HIGH, "potential_brute_force", message, entry, count=count))

        elif entry.event is AuthEvent.SIGNUP_ATTEMPT:
            count = sum(
                1
                for e in self._since(_SIGNUP_WINDOW, now)
                if e.event is AuthEvent.SIGNUP_ATTEMPT and e.ip == entry.ip
            )
            if count >= 3:
                message = f"{count} signup attempts from the same IP in 1 hour"
                alerts.append(self._alert(AlertLevel.MEDIUM, "rapid_signup_attempts", message, entry, count=count))

        elif entry.event is AuthEvent.LOGIN_SUCCESS and entry.user_id:
            known_devices = {
                (e.user_agent, e.ip)
                for e in self._entries
                if e is not entry and e.event is AuthEvent.LOGIN_SUCCESS and e.user_id == entry.user_id
            }
            if known_devices and (entry.user_agent, entry.ip) not in known_devices:
                message = "Login from a new device or location"
                alerts.append(self._alert(AlertLevel.LOW, "new_device_login", message, entry))

        elif entry.event in _TOKEN_FAILURES:
            count = sum(1 for e in self._since(_TOKEN_WINDOW, now) if e.event in _TOKEN_FAILURES and e.ip == entry.ip)
            if count >= 5:
                message = f"{count} invalid or expired tokens from the same IP in 1 hour"
                alerts.append(self._alert(AlertLevel.MEDIUM, "token_manipulation", message, entry, count=count))

        return alerts

    @staticmethod
    def _alert(level: AlertLevel, alert_type: str, message: str, entry: AuthLogEntry, **metadata: Any) -> SecurityAlert:
        return SecurityAlert(
            level=level,
            type=alert_type,
            message=message,
            ip=entry.ip,
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            metadata={"email": entry.email, **metadata} if entry.email else metadata,
        )

    def _surface(self, alert: SecurityAlert) -> None:
        if alert.level in (AlertLevel.HIGH, AlertLevel.CRITICAL):
            logger.warning("SECURITY ALERT [%s] %s: %s (ip=%s)", alert.level.value, alert.type, alert.message, alert.ip)
            if self._alert_handler is not None:
                self._alert_handler(alert)
        else:
            logger.info("security alert [%s] %s: %s (ip=%s)", alert.level.value, alert.type, alert.message, alert.ip)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recent_logs(self, limit: int = 100) -> list[AuthLogEntry]:
        """Newest-last slice of the buffer."""
        with self._lock:
            entries = list(self._entries)
        return entries[-limit:] if limit > 0 else []

    def recent_alerts(self, limit: int = 50) -> list[SecurityAlert]:
        with self._lock:
            alerts = list(self._alerts)
        return alerts[-limit:] if limit > 0 else []

    def stats(self, timeframe: str = "day") -> AuthStats:
        """Aggregate the trailing hour, day or week of the buffer."""
        if timeframe not in _TIMEFRAMES:
            raise ValueError(f"timeframe must be one of {sorted(_TIMEFRAMES)}")
        cutoff = self._clock() - _TIMEFRAMES[timeframe]
        with self._lock:
            entries = [e for e in self._entries if e.timestamp >= cutoff]
            alerts = sum(1 for a in self._alerts if a.timestamp >= cutoff)
        return AuthStats(
            total_events=len(entries),
            successful_logins=sum(1 for e in entries if e.event is AuthEvent.LOGIN_SUCCESS),
            failed_logins=sum(1 for e in entries if e.event is AuthEvent.LOGIN_FAILURE),
            signups=sum(1 for e in entries if e.event is AuthEvent.SIGNUP_SUCCESS),
            unique_ips=len({e.ip for e in entries}),
            alerts=alerts,
        )

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    def flush(self) -> int:
        """Write entries recorded since the last flush to the audit logger.

        Entries stay in the ring buffer for queries and alert windows; only
        the pending queue is drained. Returns the number of entries written.
        """
        with self._lock:
            pending, self._pending = self._pending, []
        _write(pending)
        return len(pending)


def _write(entries: list[AuthLogEntry]) -> None:
    for entry in entries:
        logger.info(json.dumps(entry.to_dict(), default=str))
