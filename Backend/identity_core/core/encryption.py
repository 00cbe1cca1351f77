"""
Secret vault for credentials stored at rest.

Implements encryption for directory bind passwords and SSO client secrets
using Fernet (AES-128-CBC with HMAC). Supports key rotation via MultiFernet.

Security considerations:
- Key must be at least 32 characters for deriving the Fernet key
- Plaintext secrets are never returned by read endpoints or logged
- Key rotation is supported without downtime

Environment variables:
- CREDENTIAL_MASTER_KEY: Primary encryption key (required in production)
- CREDENTIAL_PREVIOUS_MASTER_KEY: Previous key for rotation (optional)
"""

import base64
import hashlib
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from identity_core.core.config import settings as app_settings


class VaultError(Exception):
    """Base exception for secret vault errors."""
    pass


class EncryptionKeyError(VaultError):
    """Raised when there's an issue with the encryption key."""
    pass


class DecryptionError(VaultError):
    """Raised when decryption fails."""
    pass


def _derive_fernet_key(master_key: str, salt: Optional[bytes] = None) -> bytes:
    """
    Derive a Fernet-compatible key from a master key.

    Uses PBKDF2 with SHA256 to derive a 32-byte key from the master key,
    then base64 encodes it to get a valid Fernet key.

    Args:
        master_key: The master encryption key (at least 32 characters)
        salt: Optional salt for key derivation (uses fixed salt if not provided)

    Returns:
        A base64-encoded 32-byte key suitable for Fernet
    """
    if len(master_key) < 32:
        raise EncryptionKeyError("Master key must be at least 32 characters")

    # Fixed salt keeps derivation deterministic across restarts
    if salt is None:
        salt = hashlib.sha256(b"identity-core-vault-salt").digest()[:16]

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100000,
    )

    derived_key = kdf.derive(master_key.encode())
    return base64.urlsafe_b64encode(derived_key)


class SecretVault:
    """
    Symmetric encrypt/decrypt for stored credentials.

    Uses Fernet symmetric encryption with support for key rotation.
    """

    def __init__(
        self,
        primary_key: Optional[str] = None,
        previous_key: Optional[str] = None,
    ):
        self._primary_key = primary_key or app_settings.credential.master_key
        self._previous_key = previous_key or app_settings.credential.previous_master_key or None

        if not self._primary_key:
            raise EncryptionKeyError("CREDENTIAL_MASTER_KEY must be set")

        self._fernet = self._create_fernet()

    def _create_fernet(self) -> Union[Fernet, MultiFernet]:
        """Create Fernet or MultiFernet instance with available keys."""
        primary_fernet = Fernet(_derive_fernet_key(self._primary_key))

        if self._previous_key:
            previous_fernet = Fernet(_derive_fernet_key(self._previous_key))
            # MultiFernet tries keys in order: primary first, then previous
            return MultiFernet([primary_fernet, previous_fernet])

        return primary_fernet

    def encrypt(self, plaintext: str) -> bytes:
        """
        Encrypt a secret string.

        Args:
            plaintext: Secret to encrypt

        Returns:
            Encrypted bytes
        """
        if plaintext is None:
            raise VaultError("Cannot encrypt None value")
        return self._fernet.encrypt(plaintext.encode("utf-8"))

    def decrypt(self, encrypted_data: Optional[bytes]) -> str:
        """
        Decrypt bytes back to the secret string.

        Raises:
            DecryptionError: If the data is missing, corrupted or encrypted with another key
        """
        if encrypted_data is None:
            raise DecryptionError("Cannot decrypt None value")

        try:
            return self._fernet.decrypt(encrypted_data).decode("utf-8")
        except InvalidToken:
            raise DecryptionError(
                "Decryption failed: Invalid token. "
                "The data may be corrupted or encrypted with a different key."
            )

    def rotate(self, encrypted_data: bytes) -> bytes:
        """Re-encrypt data with the primary key."""
        if isinstance(self._fernet, MultiFernet):
            return self._fernet.rotate(encrypted_data)
        return self.encrypt(self.decrypt(encrypted_data))


# Global instance (initialized lazily)
_vault_instance: Optional[SecretVault] = None


def get_secret_vault() -> SecretVault:
    """Get or create the global secret vault instance."""
    global _vault_instance
    if _vault_instance is None:
        _vault_instance = SecretVault()
    return _vault_instance
