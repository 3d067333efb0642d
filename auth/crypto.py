"""
auth/crypto.py -- Secret generation and digest utilities.

Three hashing strategies, each matched to the secret it protects:

  hash_single_use (SHA-256): magic-link tokens. 256-bit random input with a
       five-minute TTL -- offline brute force is not a realistic threat, and
       the digest must be deterministic so the ephemeral store can be keyed
       by it.

  lookup_hash (HMAC-SHA256 keyed with SECRET_KEY): the deterministic index
       for refresh tokens. Same idea as an API-key hash: O(1) lookup, and a
       leaked table is useless without SECRET_KEY.

  hash_reusable / verify_reusable (bcrypt): refresh tokens and passwords.
       Salted and slow, so a leaked table resists offline cracking. A salted
       digest cannot be a lookup key, which is why refresh tokens carry both
       a lookup_hash and a token_hash.

Layer rule: stdlib + bcrypt only. No imports from api/, cache/, or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

_DIGITS = "0123456789"


def _require_text(value: str, name: str) -> bytes:
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if not value:
        raise ValueError(f"{name} must not be empty")
    return value.encode("utf-8")


def generate_secure_token(nbytes: int = 32) -> str:
    """Return nbytes of CSPRNG output as a hex string (2 * nbytes chars)."""
    if nbytes < 16:
        raise ValueError("nbytes must be at least 16")
    return secrets.token_hex(nbytes)


def hash_single_use(token: str) -> str:
    """SHA-256 hex digest for short-lived single-use tokens."""
    return hashlib.sha256(_require_text(token, "token")).hexdigest()


def lookup_hash(token: str, key: str) -> str:
    """Return HMAC-SHA256(key, token) as hex -- the deterministic refresh-token index."""
    return hmac.new(_require_text(key, "key"), _require_text(token, "token"), hashlib.sha256).hexdigest()


def hash_reusable(secret: str, rounds: int = 10) -> str:
    """Return a bcrypt digest of secret.

    bcrypt truncates input at 72 bytes. Refresh tokens are 64 hex chars and
    passwords are capped at the API layer, so neither reaches the limit.
    """
    return bcrypt.hashpw(_require_text(secret, "secret"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_reusable(secret: str, digest: str) -> bool:
    """Return True if secret matches the bcrypt digest. Malformed digests are a mismatch."""
    try:
        return bcrypt.checkpw(_require_text(secret, "secret"), digest.encode("utf-8"))
    except (TypeError, ValueError):
        return False


def generate_otp(digits: int = 6) -> str:
    """Return a numeric one-time code, each digit drawn independently and uniformly.

    The result is a string on purpose: "045123" must keep its leading zero.
    """
    if digits < 1:
        raise ValueError("digits must be positive")
    return "".join(secrets.choice(_DIGITS) for _ in range(digits))


def timing_safe_equal(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
