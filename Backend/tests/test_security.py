"""
Tests for the core security helpers.

Tests cover:
- Secret vault encryption, key rotation and foreign keys
- Session and partial token claims, expiry and forgery
- Password hashing edge cases
- Input sanitizing
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from identity_core.core.encryption import DecryptionError, EncryptionKeyError, SecretVault
from identity_core.core.exceptions import NotAuthenticatedError
from identity_core.core.security import InputSanitizer, PasswordHasher, TokenGenerator
from identity_core.core.tokens import TokenIssuer
from identity_core.models.user import Role

from fakes import make_user


OLD_KEY = "old-master-key-0123456789abcdefghijklmn"
NEW_KEY = "new-master-key-0123456789abcdefghijklmn"


# =============================================================================
# Secret vault
# =============================================================================


class TestSecretVault:
    """Tests for credential encryption at rest."""

    def test_roundtrip_hides_plaintext(self, vault):
        encrypted = vault.encrypt("svc-secret")

        assert b"svc-secret" not in encrypted
        assert vault.decrypt(encrypted) == "svc-secret"

    def test_short_key_refused(self):
        with pytest.raises(EncryptionKeyError):
            SecretVault(primary_key="too-short")

    def test_other_key_cannot_decrypt(self):
        encrypted = SecretVault(primary_key=OLD_KEY).encrypt("svc-secret")

        with pytest.raises(DecryptionError):
            SecretVault(primary_key=NEW_KEY).decrypt(encrypted)

    def test_previous_key_still_decrypts(self):
        encrypted = SecretVault(primary_key=OLD_KEY).encrypt("svc-secret")

        rotating = SecretVault(primary_key=NEW_KEY, previous_key=OLD_KEY)

        assert rotating.decrypt(encrypted) == "svc-secret"

    def test_rotate_moves_to_primary_key(self):
        encrypted = SecretVault(primary_key=OLD_KEY).encrypt("svc-secret")

        rotated = SecretVault(primary_key=NEW_KEY, previous_key=OLD_KEY).rotate(encrypted)

        assert SecretVault(primary_key=NEW_KEY).decrypt(rotated) == "svc-secret"

    def test_missing_value(self, vault):
        with pytest.raises(DecryptionError):
            vault.decrypt(None)


# =============================================================================
# Tokens
# =============================================================================


class TestTokenIssuer:
    """Tests for bearer token claims."""

    def test_full_token_claims(self):
        user = make_user(role=Role.COMPANY_ADMIN, company_id=uuid.uuid4(), park_id=uuid.uuid4())
        issuer = TokenIssuer()

        claims = issuer.decode(issuer.issue_full(user, keep_logged_in=True))

        assert claims.user_id == user.id
        assert claims.role is Role.COMPANY_ADMIN
        assert claims.company_id == user.company_id
        assert claims.park_id == user.park_id
        assert claims.keep_logged_in
        assert not claims.twofa_pending

    def test_partial_token_claims(self):
        user = make_user()
        issuer = TokenIssuer()

        claims = issuer.decode(issuer.issue_partial(user, setup_required=True))

        assert claims.twofa_pending
        assert claims.twofa_setup_required
        assert claims.company_id is None

    def test_expired_partial_token(self):
        user = make_user()
        stale = TokenIssuer(clock=lambda: datetime.now(timezone.utc) - timedelta(minutes=10))

        with pytest.raises(NotAuthenticatedError, match="expired"):
            TokenIssuer().decode(stale.issue_partial(user))

    def test_foreign_signature(self):
        forged = TokenIssuer(secret_key="someone-elses-key-0123456789abcdef").issue_full(make_user())

        with pytest.raises(NotAuthenticatedError):
            TokenIssuer().decode(forged)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_malformed(self, token):
        with pytest.raises(NotAuthenticatedError):
            TokenIssuer().decode(token)


# =============================================================================
# Hashing and sanitizing
# =============================================================================


class TestPasswordHasher:
    """Tests for bcrypt hashing."""

    def test_verify(self, hasher):
        hashed = hasher.hash("correct horse")

        assert hasher.verify("correct horse", hashed)
        assert not hasher.verify("wrong horse", hashed)

    @pytest.mark.parametrize("hashed", [None, "", "not-a-bcrypt-hash"])
    def test_missing_or_malformed_hash(self, hasher, hashed):
        assert not hasher.verify("correct horse", hashed)

    def test_empty_password_never_matches(self, hasher):
        assert not hasher.verify("", hasher.hash("x"))


class TestInputSanitizer:
    """Tests for input normalization."""

    def test_email(self):
        assert InputSanitizer.sanitize_email("  Alice@Acme.COM ") == "alice@acme.com"

    def test_email_domain(self):
        assert InputSanitizer.email_domain("alice@Acme.com") == "acme.com"
        assert InputSanitizer.email_domain("alice") == ""

    def test_device_name(self):
        assert InputSanitizer.sanitize_device_name(None) == "Unknown device"
        assert InputSanitizer.sanitize_device_name("Firefox\x00\n") == "Firefox"
        assert len(InputSanitizer.sanitize_device_name("x" * 500)) == 255

    def test_generated_tokens(self):
        assert len(TokenGenerator.generate_device_token()) == 64
        assert len(TokenGenerator.generate_backup_code()) == 8
        assert TokenGenerator.generate_state() != TokenGenerator.generate_state()
