"""Password hashing and strength policy.

Hashes are Argon2id over a random 16-byte salt; the stored value is
``base64(salt || derived_key)``. Verification re-derives the key and compares
the raw bytes in constant time.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import os
import re

from argon2.low_level import Type, hash_secret_raw

from authledger.errors import WeakPassword

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

SALT_BYTES = 16
KEY_BYTES = 32

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


def validate_password_strength(password: str) -> list[str]:
    """Check a password against the policy.

    Args:
        password: Candidate password.

    Returns:
        Every violated rule as a human-readable message; empty when valid.
    """
    errors: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not _LOWER.search(password):
        errors.append("Password must contain at least one lowercase letter")
    if not _UPPER.search(password):
        errors.append("Password must contain at least one uppercase letter")
    if not _DIGIT.search(password):
        errors.append("Password must contain at least one number")
    return errors


class PasswordHasher:
    """Argon2id password hasher with fixed cost parameters."""

    def __init__(
        self,
        time_cost: int = 2,
        memory_cost: int = 19456,
        parallelism: int = 1,
    ) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    def _derive(self, password: str, salt: bytes) -> bytes:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=KEY_BYTES,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        """Hash a password with a fresh salt.

        Raises:
            WeakPassword: If the password is shorter than the minimum or
                longer than the maximum length.
        """
        if len(password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword(
                [f"Password must be at least {MIN_PASSWORD_LENGTH} characters"]
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            raise WeakPassword(
                [f"Password must be at most {MAX_PASSWORD_LENGTH} characters"]
            )
        salt = os.urandom(SALT_BYTES)
        key = self._derive(password, salt)
        return base64.b64encode(salt + key).decode("ascii")

    def verify(self, password: str, stored_hash: str) -> bool:
        """Check a password against a stored hash in constant time.

        Returns False for a malformed stored value instead of raising.
        """
        try:
            raw = base64.b64decode(stored_hash.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            logger.warning("Stored password hash is not valid base64")
            return False
        if len(raw) != SALT_BYTES + KEY_BYTES:
            return False

        salt, expected = raw[:SALT_BYTES], raw[SALT_BYTES:]
        actual = self._derive(password, salt)
        return hmac.compare_digest(actual, expected)
