"""
core/passwords.py -- Password generation and strength classification.

generate_password() builds a random password that always contains at least
one character from each class (lower, upper, digit, symbol), then shuffles
with a CSPRNG so the guaranteed characters are not in predictable positions.

analyze_strength() is a deterministic heuristic shown next to the password
field in the account form. It never leaves the process.
"""

from __future__ import annotations

import secrets
import string
from enum import Enum

LOWER = string.ascii_lowercase
UPPER = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*()_+~`|}{[]:;?><,./-="

DEFAULT_LENGTH = 10

# Tiny deny-list of the passwords that show up first in every breach corpus.
_COMMON = {
    "password",
    "123456",
    "12345678",
    "123456789",
    "qwerty",
    "abc123",
    "111111",
    "iloveyou",
    "admin",
    "letmein",
}


class PasswordStrength(str, Enum):
    weak = "weak"
    medium = "medium"
    strong = "strong"


def generate_password(length: int = DEFAULT_LENGTH) -> str:
    """Return a random password of the given length (minimum 4)."""
    if length < 4:
        raise ValueError("Password length must be at least 4.")
    charsets = (LOWER, UPPER, DIGITS, SYMBOLS)
    chars = [secrets.choice(cs) for cs in charsets]
    alphabet = "".join(charsets)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    # Fisher-Yates with secrets.randbelow
    for i in range(len(chars) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)


def analyze_strength(password: str) -> PasswordStrength:
    """Classify a password as weak, medium or strong.

    Score: one point per character class present, plus one for length >= 12.
    Anything shorter than 8 characters or on the common-password list is weak.
    """
    if len(password) < 8 or password.lower() in _COMMON:
        return PasswordStrength.weak

    classes = sum(1 for cs in (LOWER, UPPER, DIGITS, SYMBOLS) if any(ch in cs for ch in password))
    score = classes + (1 if len(password) >= 12 else 0)

    if score >= 4:
        return PasswordStrength.strong
    if score >= 2:
        return PasswordStrength.medium
    return PasswordStrength.weak
