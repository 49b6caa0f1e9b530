"""Password generation for accounts declared without one."""

from __future__ import annotations

import secrets
import string

SPECIAL_CHARS = "!@#$%&*"
ALL_CHARS = string.ascii_letters + string.digits + SPECIAL_CHARS
DEFAULT_LENGTH = 64


def generate_password(length: int = DEFAULT_LENGTH) -> str:
    """Return a random password with at least one special, digit and upper-case char."""

    if length < 3:
        raise ValueError("password length must be at least 3")

    chars = [
        secrets.choice(SPECIAL_CHARS),
        secrets.choice(string.digits),
        secrets.choice(string.ascii_uppercase),
    ]
    chars.extend(secrets.choice(ALL_CHARS) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
