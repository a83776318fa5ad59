"""
core/net.py -- Client address extraction for rate limiting and audit logging.

Both the rate limiter and the auth event logger key on the caller's address,
so they must agree on how it is derived. Precedence:

  1. X-Forwarded-For (first entry -- the original client)
  2. X-Real-IP
  3. X-Client-IP
  4. transport-level peer address
  5. the literal "unknown"

Loopback addresses (127.0.0.1, ::1) collapse to "localhost" so IPv4 and IPv6
local traffic share one counter.

Security note: forwarding headers are client-controlled unless a trusted proxy
overwrites them. Deploy behind a proxy that sets X-Forwarded-For, otherwise a
client can rotate the header to dodge per-IP limits.

Layer rule: no framework imports. Works with any object exposing `headers`
(case-insensitive mapping) and `client` (with `.host`), which is what
Starlette's Request provides.
"""

from __future__ import annotations

from typing import Any

UNKNOWN_CLIENT = "unknown"
_LOOPBACK = {"127.0.0.1", "::1", "::ffff:127.0.0.1", "localhost"}


def normalize_ip(ip: str) -> str:
    ip = ip.strip()
    if ip in _LOOPBACK:
        return "localhost"
    return ip or UNKNOWN_CLIENT


def client_ip(request: Any) -> str:
    """Return the normalized client address for a request."""
    headers = request.headers
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return normalize_ip(first)
    for name in ("x-real-ip", "x-client-ip"):
        value = headers.get(name)
        if value and value.strip():
            return normalize_ip(value)
    client = getattr(request, "client", None)
    if client is not None and getattr(client, "host", None):
        return normalize_ip(client.host)
    return UNKNOWN_CLIENT


def user_agent(request: Any) -> str:
    return request.headers.get("user-agent") or "unknown"
