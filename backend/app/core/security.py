# app/core/security.py
from __future__ import annotations

import hmac
import secrets
from hashlib import sha256

# 32 bytes -> 256 bits of entropy, ~43 url-safe chars.
TOKEN_BYTES = 32
DEFAULT_CODE_LENGTH = 6


# -------------------------
# Link tokens
# -------------------------
def generate_token() -> str:
    """
    Generate a cryptographically secure, URL-safe verification token.
    This raw token is ONLY sent to the user once.
    Backend stores ONLY a hash.
    """
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """
    Hash a link token for storage and lookup (never store the raw token).
    Tokens are random and single-use, so no salt is needed.
    """
    return sha256(raw_token.encode("utf-8")).hexdigest()


# -------------------------
# Manual-entry codes
# -------------------------
def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    if length < 1:
        raise ValueError("code length must be positive")
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def normalize_code(code: str | None) -> str:
    return (code or "").strip()


def codes_match(expected: str | None, candidate: str | None) -> bool:
    if not expected or not candidate:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))
