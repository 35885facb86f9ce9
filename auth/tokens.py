"""
auth/tokens.py -- Password hashing, reset tokens, session ids, and cookie helpers.

Security design decisions:
  Passwords: bcrypt with a configurable cost factor (Settings.bcrypt_rounds).
       bcrypt is the right choice for low-entropy secrets because its cost
       factor makes brute-force expensive, and bcrypt.checkpw compares in
       constant time. PasswordHasher keeps a dummy hash so callers can
       equalize timing when the account does not exist [C1].

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_token) so a leaked table cannot be replayed
       and lookup stays O(1) through the UNIQUE index. bcrypt's slowness is
       unnecessary for high-entropy values.

  Session ids: secrets.token_urlsafe(32). The id is the only secret that
       crosses to the client; it is stored as-is because it must be looked up
       on every request.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

# bcrypt only reads the first 72 bytes; bcrypt >= 5 refuses anything longer.
MAX_PASSWORD_BYTES = 72

_DEVICE_LABELS: tuple[tuple[str, str], ...] = (
    ("Chrome", "Chrome Browser"),
    ("Firefox", "Firefox Browser"),
    ("Safari", "Safari Browser"),
)

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


class PasswordHasher:
    """One-way salted hashing and constant-time verification of passwords.

    Usage:
        hasher = PasswordHasher(rounds=12)
        hashed = hasher.hash("secret1")
        hasher.verify("secret1", hashed)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first failed login is not measurably slower
        # than later ones.
        self._dummy_hash = self.hash("marketplace_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password.

        Raises ValueError for passwords longer than 72 bytes. The API layer
        rejects those with a 422 before they get here.
        """
        encoded = plain.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password exceeds {MAX_PASSWORD_BYTES} bytes.")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed hash or over-long input: a mismatch, not a crash.
            return False

    def dummy_verify(self, plain: str) -> None:
        """Burn one bcrypt check so unknown accounts cost the same as known ones [C1]."""
        self.verify(plain, self._dummy_hash)


# ---------------------------------------------------------------------------
# Reset tokens and session ids
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """Return a 64-hex-char token (256 bits) for the password reset email."""
    return secrets.token_hex(32)


def hash_reset_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string.

    Deterministic, so the store can look the token up by hash. Without
    SECRET_KEY an attacker holding the DB cannot forge a matching token.
    """
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def device_label(user_agent: str) -> str:
    """Bucket a user-agent string into a short, human-readable device name.

    Order matters: Chrome's UA also contains "Safari".
    """
    for needle, label in _DEVICE_LABELS:
        if needle in user_agent:
            return label
    return user_agent[:100] or "Unknown Device"


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session_id: str, *, name: str, max_age: int, secure: bool) -> None:
    """Write the session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (production).
    max_age: matches the server-side session TTL so both expire together.
    """
    response.set_cookie(
        name,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_session_cookie(response, *, name: str) -> None:
    response.delete_cookie(name, httponly=True, samesite="lax")
