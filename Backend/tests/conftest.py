"""
Pytest configuration and shared fixtures for the identity core tests.

This module provides:
- Environment setup before the application settings load
- In-memory repositories and a fake directory server
- A ready SecretVault and fast password hashing
"""

import os
import tempfile

import pytest

# Environment setup before any imports
os.environ["APP_ENV"] = "test"
os.environ["DB_URL"] = f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/identity-test.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_REQUESTS"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdefghijklmnop"
os.environ["CREDENTIAL_MASTER_KEY"] = "test-master-key-0123456789abcdefghijklmnop"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ["BACKUP_CODE_HASH_ROUNDS"] = "4"
os.environ["DIRECTORY_SCHEDULER_ENABLED"] = "false"
os.environ["REDIS_ENABLED"] = "false"
os.environ["FRONTEND_BASE_URL"] = "http://frontend.test"
os.environ["API_BASE_URL"] = "http://api.test"

from identity_core.core.encryption import SecretVault  # noqa: E402
from identity_core.core.security import PasswordHasher  # noqa: E402
from identity_core.services.sso.oidc import OidcClient  # noqa: E402

from fakes import (  # noqa: E402
    FakeDirectory,
    FakeDirectoryConfigRepository,
    FakeSsoConfigRepository,
    FakeTenantSettings,
    FakeTrustedDeviceRepository,
    FakeUserRepository,
    FixedClock,
)


@pytest.fixture
def vault():
    """Vault keyed independently of the global instance."""
    return SecretVault(primary_key="unit-test-master-key-0123456789abcdef")


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def users():
    return FakeUserRepository()


@pytest.fixture
def tenants():
    return FakeTenantSettings()


@pytest.fixture
def devices():
    return FakeTrustedDeviceRepository()


@pytest.fixture
def directory_configs():
    return FakeDirectoryConfigRepository()


@pytest.fixture
def sso_configs():
    return FakeSsoConfigRepository()


@pytest.fixture
def ldap_server():
    return FakeDirectory()


@pytest.fixture(autouse=True)
def clear_oidc_discovery_cache():
    """Discovery documents are cached per process."""
    OidcClient.clear_discovery_cache()
    yield
    OidcClient.clear_discovery_cache()
