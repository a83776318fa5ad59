"""
core/sanitizer.py -- Input sanitization and structured-field validation.

Every request body on a sensitive route passes through an InputSanitizer
before pydantic validation sees it. The string pipeline, each stage toggled
by SanitizationOptions:

  1. trim surrounding whitespace
  2. drop ASCII control characters (tab, LF and CR survive)
  3. Unicode NFC normalization
  4. truncate to max_length characters; an entity from stage 7 counts as one
     character and is never split
  5. markup: strip all tags, removing <script>/<style> blocks with their
     contents, or (allow_html) rebuild only allow-listed tags/attributes
  6. SQL denylist: quotes, semicolons, comment markers and DDL/DML keywords,
     repeated until the string stops changing
  7. HTML-entity encode & < > " ' / ` =
  8. trim again

Entity encoding is the last transforming stage. Tag stripping needs to see
raw '<' characters, and the semicolon filter must not eat the terminator of
an entity it did not produce. Entities already in the output alphabet are
left alone by stages 4, 6 and 7, so sanitizing twice equals sanitizing once,
including for input long enough to be truncated.

Security notes:
  The SQL denylist is defense-in-depth only. Injection safety comes from the
  bound parameters in auth/store.py; never build SQL from sanitized strings.

  Output with prevent_xss=True never contains a raw < > " or '.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import html
import json
import re
import unicodedata
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import urlsplit

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_SCRIPT_BLOCK_RE = re.compile(r"<\s*(script|style)\b[^>]*>.*?(?:<\s*/\s*\1\s*>|$)", re.IGNORECASE | re.DOTALL)
_ANY_TAG_RE = re.compile(r"<[^>]*>")
_HTML_TAG_RE = re.compile(r"<\s*(/?)\s*([a-zA-Z][a-zA-Z0-9]*)([^>]*)>")
_ATTRIBUTE_RE = re.compile(r"""([a-zA-Z_:][-a-zA-Z0-9_:.]*)\s*=\s*("[^"]*"|'[^']*'|[^\s"'>]+)""")
_EVENT_HANDLER_RE = re.compile(r"""\s+on[a-z]+\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]+)""", re.IGNORECASE)
_DANGEROUS_PROTOCOL_RE = re.compile(r"\b(?:javascript|vbscript|data)\s*:", re.IGNORECASE)

# Entities produced by stage 7. Both the SQL filter and the encoder skip them.
_ENTITY = r"&(?:amp|lt|gt|quot|#x27|#x2F|#96|#61);"
_BARE_AMPERSAND_RE = re.compile(rf"&(?!(?:amp|lt|gt|quot|#x27|#x2F|#96|#61);)")
_SEMICOLON_RE = re.compile(rf"({_ENTITY})|;")
_ENTITY_RE = re.compile(_ENTITY)
_XSS_TABLE = str.maketrans(
    {
        "<": "&lt;",
        ">": "&gt;",
        '"': "&quot;",
        "'": "&#x27;",
        "/": "&#x2F;",
        "`": "&#96;",
        "=": "&#61;",
    }
)

_SQL_PATTERNS = (
    re.compile(r"['\"]"),
    re.compile(r"--"),
    re.compile(r"/\*|\*/"),
    re.compile(r"\b(?:UNION|SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|SCRIPT)\b", re.IGNORECASE),
)

_EMAIL_RE = re.compile(
    r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*"
)
_EMAIL_STRIP_RE = re.compile(r"[<>\"'();\\]")
_URL_STRIP_RE = re.compile(r"[<>\"'`\s]")
_PHONE_RE = re.compile(r"(\+\d{1,3}[- ]?)?\d{10,14}")

VALIDATION_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": _EMAIL_RE,
    "phone": _PHONE_RE,
    "url": re.compile(
        r"https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_+.~#?&/=]*)"
    ),
    "alphanumeric": re.compile(r"[a-zA-Z0-9]+"),
    "username": re.compile(r"[a-zA-Z0-9_-]{3,20}"),
    "password": re.compile(r"(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}"),
    "hex_color": re.compile(r"#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})"),
    "uuid": re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}", re.IGNORECASE),
}

# ---------------------------------------------------------------------------
# Options and profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SanitizationOptions:
    """Toggles for the sanitize_string pipeline.

    allowed_tags / allowed_attributes only matter when allow_html is True.
    max_length of 0 disables truncation.
    """

    allow_html: bool = False
    max_length: int = 10_000
    trim_whitespace: bool = True
    remove_control_chars: bool = True
    normalize_unicode: bool = True
    prevent_xss: bool = True
    prevent_sql_injection: bool = True
    allowed_tags: frozenset[str] = frozenset()
    allowed_attributes: frozenset[str] = frozenset()


DEFAULT_OPTIONS = SanitizationOptions()
AUTH_OPTIONS = SanitizationOptions(max_length=500)
# Search terms legitimately contain quotes and punctuation.
SEARCH_OPTIONS = SanitizationOptions(max_length=1000, prevent_sql_injection=False)
# Rich text keeps its allow-listed markup, so entity encoding and the quote
# filter are off; the allow-list rebuild is what neutralizes it.
CONTENT_OPTIONS = SanitizationOptions(
    allow_html=True,
    max_length=50_000,
    prevent_xss=False,
    prevent_sql_injection=False,
    allowed_tags=frozenset({"b", "i", "em", "strong", "p", "br", "ul", "ol", "li", "a"}),
    allowed_attributes=frozenset({"href", "title"}),
)

# ---------------------------------------------------------------------------
# Sanitizer
# ---------------------------------------------------------------------------


class InputSanitizer:
    """Applies one SanitizationOptions profile to strings and JSON-like trees.

    Instances are stateless apart from their options and are safe to share
    across requests and threads.

    Usage:
        sanitizer = InputSanitizer(AUTH_OPTIONS)
        clean = sanitizer.sanitize_object(await request.json())
    """

    def __init__(self, options: SanitizationOptions = DEFAULT_OPTIONS) -> None:
        self.options = options

    def with_options(self, **overrides: Any) -> InputSanitizer:
        return InputSanitizer(replace(self.options, **overrides))

    def sanitize_string(self, value: Any) -> str:
        """Run the full pipeline. Non-string input yields an empty string."""
        if not isinstance(value, str):
            return ""
        opts = self.options
        result = value

        if opts.trim_whitespace:
            result = result.strip()
        if opts.remove_control_chars:
            result = _CONTROL_CHARS_RE.sub("", result)
        if opts.normalize_unicode:
            result = unicodedata.normalize("NFC", result)
        if opts.max_length:
            result = _truncate(result, opts.max_length)

        if opts.allow_html:
            result = self._sanitize_html(result)
        else:
            result = _strip_tags(result)

        if opts.prevent_sql_injection:
            result = _strip_sql(result)
        if opts.prevent_xss:
            result = _encode_entities(result)

        if opts.trim_whitespace:
            result = result.strip()
        return result

    def sanitize_object(self, value: Any) -> Any:
        """Recursively sanitize every string leaf and every mapping key.

        Numbers, booleans and None come back untouched. Objects that are not
        plain dict/list/tuple/str pass through unchanged.
        """
        if isinstance(value, str):
            return self.sanitize_string(value)
        if isinstance(value, dict):
            return {self.sanitize_string(k) if isinstance(k, str) else k: self.sanitize_object(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.sanitize_object(item) for item in value]
        return value

    def sanitize_json(self, raw: str) -> Any | None:
        """Parse a JSON document and sanitize it. Returns None on parse failure."""
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return self.sanitize_object(parsed)

    # ------------------------------------------------------------------
    # Allow-list HTML
    # ------------------------------------------------------------------

    def _sanitize_html(self, value: str) -> str:
        value = _SCRIPT_BLOCK_RE.sub("", value)
        value = _EVENT_HANDLER_RE.sub("", value)
        value = _DANGEROUS_PROTOCOL_RE.sub("", value)
        return _HTML_TAG_RE.sub(self._rebuild_tag, value)

    def _rebuild_tag(self, match: re.Match[str]) -> str:
        closing, name, attrs = match.group(1), match.group(2).lower(), match.group(3)
        if name not in self.options.allowed_tags:
            return ""
        if closing:
            return f"</{name}>"
        kept = []
        for attr in _ATTRIBUTE_RE.finditer(attrs):
            attr_name = attr.group(1).lower()
            if attr_name in self.options.allowed_attributes:
                attr_value = attr.group(2).strip("\"'")
                kept.append(f' {attr_name}="{html.escape(attr_value, quote=True)}"')
        return f"<{name}{''.join(kept)}>"


# ---------------------------------------------------------------------------
# Stage helpers
# ---------------------------------------------------------------------------


def _truncate(value: str, limit: int) -> str:
    """Cut to `limit` characters, counting each stage-7 entity as one and never splitting it."""
    if len(value) <= limit:
        return value
    count = 0
    pos = 0
    for match in _ENTITY_RE.finditer(value):
        plain = match.start() - pos
        if count + plain >= limit:
            break
        count += plain + 1
        pos = match.end()
        if count == limit:
            return value[:pos]
    return value[: pos + limit - count]


def _strip_tags(value: str) -> str:
    value = _SCRIPT_BLOCK_RE.sub("", value)
    return _ANY_TAG_RE.sub("", value)


def _strip_sql(value: str) -> str:
    previous = None
    while previous != value:
        previous = value
        value = _SEMICOLON_RE.sub(lambda m: m.group(1) or "", value)
        for pattern in _SQL_PATTERNS:
            value = pattern.sub("", value)
    return value


def _encode_entities(value: str) -> str:
    return _BARE_AMPERSAND_RE.sub("&amp;", value).translate(_XSS_TABLE)


# ---------------------------------------------------------------------------
# Structured fields -- validators return None instead of raising
# ---------------------------------------------------------------------------


def sanitize_email(value: Any) -> str | None:
    """Lowercase, trim and validate an email address.

    Strips < > " ' ( ) ; and backslash, then rejects anything outside the
    address grammar, consecutive dots, a leading/trailing dot, or a dot
    touching the '@'.
    """
    if not isinstance(value, str):
        return None
    email = _EMAIL_STRIP_RE.sub("", value.strip().lower())
    if len(email) > 254 or not _EMAIL_RE.fullmatch(email):
        return None
    if ".." in email or email.startswith(".") or email.endswith(".") or ".@" in email or "@." in email:
        return None
    return email


def sanitize_url(value: Any) -> str | None:
    """Accept only absolute http(s) URLs; strip characters that break out of attributes."""
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return _URL_STRIP_RE.sub("", candidate)


def sanitize_phone_number(value: Any) -> str | None:
    """Reduce to digits with an optional leading '+', then validate length."""
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"[^\d+]", "", value)
    if cleaned.startswith("+"):
        cleaned = "+" + cleaned[1:].replace("+", "")
    else:
        cleaned = cleaned.replace("+", "")
    return cleaned if _PHONE_RE.fullmatch(cleaned) else None


def validate_input(value: str, pattern: str | re.Pattern[str]) -> bool:
    """Full-match value against a named VALIDATION_PATTERNS entry or a compiled pattern."""
    if isinstance(pattern, str):
        pattern = VALIDATION_PATTERNS[pattern]
    return pattern.fullmatch(value) is not None


# ---------------------------------------------------------------------------
# Preconfigured sanitizers
# ---------------------------------------------------------------------------

default_sanitizer = InputSanitizer(DEFAULT_OPTIONS)
auth_sanitizer = InputSanitizer(AUTH_OPTIONS)
search_sanitizer = InputSanitizer(SEARCH_OPTIONS)
content_sanitizer = InputSanitizer(CONTENT_OPTIONS)


def sanitize_string(value: Any, options: SanitizationOptions = DEFAULT_OPTIONS) -> str:
    return InputSanitizer(options).sanitize_string(value)


def sanitize_object(value: Any, options: SanitizationOptions = DEFAULT_OPTIONS) -> Any:
    return InputSanitizer(options).sanitize_object(value)
