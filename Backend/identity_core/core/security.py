"""
Security utilities for password hashing and token generation.
"""

import re
import secrets
from typing import Optional

import bcrypt

from identity_core.core.config import settings


class PasswordHasher:
    """bcrypt hashing for passwords and 2FA backup codes."""

    def __init__(self, rounds: Optional[int] = None):
        self.rounds = rounds or settings.security.password_hash_rounds

    @staticmethod
    def _to_bytes(value: str) -> bytes:
        # Bcrypt can only handle 72 bytes
        data = value.encode("utf-8")
        if len(data) > 72:
            data = data[:72]
        return data

    def hash(self, password: str) -> str:
        """Hash a password using bcrypt."""
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(self._to_bytes(password), salt).decode("utf-8")

    def verify(self, plain_password: str, hashed_password: Optional[str]) -> bool:
        """Verify a password against a hash. Missing or malformed hashes never match."""
        if not plain_password or not hashed_password:
            return False
        try:
            return bcrypt.checkpw(self._to_bytes(plain_password), hashed_password.encode("utf-8"))
        except ValueError:
            return False


class TokenGenerator:
    """Secure token generation utilities."""

    @staticmethod
    def generate_state() -> str:
        """Generate an SSO correlation state token."""
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_nonce() -> str:
        """Generate an OIDC nonce."""
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_device_token() -> str:
        """Generate a trusted device token (64 hex characters)."""
        return secrets.token_hex(32)

    @staticmethod
    def generate_backup_code() -> str:
        """Generate one 8-character hex backup code."""
        return secrets.token_hex(4)


class InputSanitizer:
    """Input sanitization utilities."""

    _CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

    @staticmethod
    def sanitize_email(email: str) -> str:
        """Sanitize email input."""
        return email.strip().lower()

    @staticmethod
    def sanitize_device_name(user_agent: Optional[str], max_length: int = 255) -> str:
        """Turn a User-Agent header into a storable device label."""
        if not user_agent:
            return "Unknown device"
        cleaned = InputSanitizer._CONTROL_CHARS.sub("", user_agent).strip()
        return cleaned[:max_length] or "Unknown device"

    @staticmethod
    def email_domain(email: str) -> str:
        """Lowercased domain part of an email address."""
        return email.rsplit("@", 1)[-1].strip().lower() if "@" in email else ""
