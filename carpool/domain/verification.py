"""
Boarding verification codes.

Codes are drawn with ``secrets`` from an alphabet without look-alike
characters (no 0/O, 1/I) and are compared case-insensitively in constant
time.
"""

from __future__ import annotations

import hmac
import secrets

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_code(length: int = 6) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_reference() -> str:
    """Human-readable booking reference, e.g. ``BK-7KQ2ZP``."""
    return f"BK-{generate_code(6)}"


def normalise(code: str) -> str:
    return code.strip().upper()


def codes_match(expected: str, supplied: str | None) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(normalise(expected), normalise(supplied))
