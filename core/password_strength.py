"""
core/password_strength.py -- Password scoring against composition, entropy and pattern rules.

Scoring (0..5 reported, raw score drives the strength label):
  +1 each for minimum length, uppercase, lowercase, digit, special character
  -2 common password (list hit, 3-char ascending/descending run, or a single repeated char)
  -1 contains personal information (any item of 3+ chars, case-insensitive)
  -1 repeating patterns (aaa, or a prefix repeated across half the password)
  -1 keyboard runs (3 adjacent keys on a row, either direction)
  +1 each for length >= 12, length >= 16, unique chars >= 80% of length

Entropy is length * log2(charset size). Crack-time estimates assume 1e9
guesses per second against half the keyspace.

A password is valid when no rule produced feedback and the score is at least 3.
"""

from __future__ import annotations

import math
import re
import secrets
from dataclasses import dataclass, field

SPECIAL_CHARS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
_SPECIAL_RE = re.compile(f"[{re.escape(SPECIAL_CHARS)}]")

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "123456789", "qwerty", "abc123", "password123",
        "admin", "letmein", "welcome", "monkey", "1234567890", "login",
        "princess", "solo", "qwertyuiop", "starwars", "12345", "1234567",
        "dragon", "mustang", "baseball", "football", "shadow", "master",
        "jordan", "superman", "harley", "1234", "hunter", "trustno1",
    }
)  # fmt: skip

_KEYBOARD_ROWS = ("qwertyuiop", "asdfghjkl", "zxcvbnm", "1234567890")
_GUESSES_PER_SECOND = 1e9


@dataclass(frozen=True)
class PasswordCriteria:
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    forbid_common_passwords: bool = True
    forbid_personal_info: tuple[str, ...] = ()
    min_unique_chars: int = 4


@dataclass
class PasswordStrengthResult:
    score: int
    strength: str  # very-weak | weak | fair | good | strong | very-strong
    is_valid: bool
    entropy: float
    time_to_crack: str
    feedback: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


class PasswordStrengthChecker:
    """Scores passwords against a PasswordCriteria instance.

    Usage:
        result = PasswordStrengthChecker().check("Str0ng!Pass", personal_info=["alice"])
        if not result.is_valid: ...
    """

    def __init__(self, criteria: PasswordCriteria | None = None) -> None:
        self.criteria = criteria or PasswordCriteria()

    def check(self, password: str, personal_info: list[str] | None = None) -> PasswordStrengthResult:
        c = self.criteria
        feedback: list[str] = []
        score = 0

        if len(password) < c.min_length:
            feedback.append(f"Password must be at least {c.min_length} characters long")
        else:
            score += 1
        if len(password) > c.max_length:
            feedback.append(f"Password must not exceed {c.max_length} characters")

        has_upper = re.search(r"[A-Z]", password) is not None
        has_lower = re.search(r"[a-z]", password) is not None
        has_digit = re.search(r"\d", password) is not None
        has_special = _SPECIAL_RE.search(password) is not None

        for required, present, message in (
            (c.require_uppercase, has_upper, "Password must contain at least one uppercase letter"),
            (c.require_lowercase, has_lower, "Password must contain at least one lowercase letter"),
            (c.require_numbers, has_digit, "Password must contain at least one number"),
            (c.require_special_chars, has_special, f"Password must contain at least one special character ({SPECIAL_CHARS})"),
        ):
            if present:
                score += 1
            elif required:
                feedback.append(message)

        unique_chars = len(set(password))
        if unique_chars < c.min_unique_chars:
            feedback.append(f"Password must contain at least {c.min_unique_chars} unique characters")

        if c.forbid_common_passwords and _is_common_password(password):
            feedback.append("Password is too common. Please choose a more unique password")
            score = max(0, score - 2)

        if _contains_personal_info(password, [*(personal_info or []), *c.forbid_personal_info]):
            feedback.append("Password should not contain personal information")
            score = max(0, score - 1)

        if _has_repeating_patterns(password):
            feedback.append("Password contains repeating patterns")
            score = max(0, score - 1)

        if _has_keyboard_patterns(password):
            feedback.append("Password contains keyboard patterns")
            score = max(0, score - 1)

        if len(password) >= 12:
            score += 1
        if len(password) >= 16:
            score += 1
        if password and unique_chars >= len(password) * 0.8:
            score += 1

        entropy = calculate_entropy(password)
        is_valid = not feedback and score >= 3
        strength = _strength_level(score, entropy)
        if score >= 4:
            feedback.insert(0, "Good password strength!")

        return PasswordStrengthResult(
            score=min(5, score),
            strength=strength,
            is_valid=is_valid,
            entropy=round(entropy, 2),
            time_to_crack=estimate_time_to_crack(entropy),
            feedback=feedback,
            suggestions=_suggestions(password, has_upper, has_lower, has_digit, has_special),
        )

    def generate_secure_password(self, length: int = 16) -> str:
        """Return a random password containing every required character class."""
        pools = []
        if self.criteria.require_lowercase:
            pools.append("abcdefghijklmnopqrstuvwxyz")
        if self.criteria.require_uppercase:
            pools.append("ABCDEFGHIJKLMNOPQRSTUVWXYZ")
        if self.criteria.require_numbers:
            pools.append("0123456789")
        if self.criteria.require_special_chars:
            pools.append(SPECIAL_CHARS)
        if not pools:
            pools.append("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789")

        charset = "".join(pools)
        chars = [secrets.choice(pool) for pool in pools]
        chars.extend(secrets.choice(charset) for _ in range(max(0, length - len(chars))))
        rng = secrets.SystemRandom()
        rng.shuffle(chars)
        return "".join(chars)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _is_common_password(password: str) -> bool:
    lowered = password.lower()
    return lowered in COMMON_PASSWORDS or _is_sequential(lowered) or _is_single_char(lowered)


def _is_sequential(password: str) -> bool:
    run = 0
    for current, following in zip(password, password[1:]):
        if abs(ord(current) - ord(following)) == 1:
            run += 1
            if run >= 2:
                return True
        else:
            run = 0
    return False


def _is_single_char(password: str) -> bool:
    return len(password) > 2 and len(set(password)) == 1


def _contains_personal_info(password: str, personal_info: list[str]) -> bool:
    lowered = password.lower()
    return any(len(item) >= 3 and item.lower() in lowered for item in personal_info)


def _has_repeating_patterns(password: str) -> bool:
    if re.search(r"(.)\1{2,}", password):
        return True
    for size in range(2, len(password) // 2 + 1):
        repeated = password[:size] * (len(password) // size)
        if password.startswith(repeated) and len(repeated) >= len(password) * 0.5:
            return True
    return False


def _has_keyboard_patterns(password: str) -> bool:
    lowered = password.lower()
    for row in _KEYBOARD_ROWS:
        for i in range(len(row) - 2):
            chunk = row[i : i + 3]
            if chunk in lowered or chunk[::-1] in lowered:
                return True
    return False


def _strength_level(score: int, entropy: float) -> str:
    if score <= 1 or entropy < 30:
        return "very-weak"
    if score <= 2 or entropy < 40:
        return "weak"
    if score <= 3 or entropy < 50:
        return "fair"
    if score <= 4 or entropy < 60:
        return "good"
    if score <= 5 or entropy < 70:
        return "strong"
    return "very-strong"


def _suggestions(password: str, has_upper: bool, has_lower: bool, has_digit: bool, has_special: bool) -> list[str]:
    tips = []
    if len(password) < 12:
        tips.append("Use 12 or more characters")
    if not (has_upper and has_lower):
        tips.append("Mix uppercase and lowercase letters")
    if not has_digit:
        tips.append("Add a number")
    if not has_special:
        tips.append("Add a symbol such as ! or #")
    return tips


# ---------------------------------------------------------------------------
# Entropy
# ---------------------------------------------------------------------------


def calculate_entropy(password: str) -> float:
    charset = 0
    if re.search(r"[a-z]", password):
        charset += 26
    if re.search(r"[A-Z]", password):
        charset += 26
    if re.search(r"\d", password):
        charset += 10
    if _SPECIAL_RE.search(password):
        charset += len(SPECIAL_CHARS)
    if charset == 0:
        return 0.0
    return len(password) * math.log2(charset)


def estimate_time_to_crack(entropy: float) -> str:
    # Beyond ~1000 bits the float power overflows; the answer is the same.
    if entropy > 1000:
        return "Centuries"
    seconds = math.pow(2, entropy - 1) / _GUESSES_PER_SECOND
    if seconds < 1:
        return "Instant"
    if seconds < 60:
        return f"{round(seconds)} seconds"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    if seconds < 86400:
        return f"{round(seconds / 3600)} hours"
    if seconds < 31_536_000:
        return f"{round(seconds / 86400)} days"
    if seconds < 31_536_000_000:
        return f"{round(seconds / 31_536_000)} years"
    return "Centuries"


password_checker = PasswordStrengthChecker()


def check_password_strength(password: str, personal_info: list[str] | None = None) -> PasswordStrengthResult:
    return password_checker.check(password, personal_info)


def generate_secure_password(length: int = 16) -> str:
    return password_checker.generate_secure_password(length)
