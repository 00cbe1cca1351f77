from identity_core.repositories.base import (
    DirectoryConfigRepository,
    PlatformSecurityDefaults,
    SsoConfigRepository,
    TenantSettingsReader,
    TrustedDeviceRepository,
    UserRepository,
)
from identity_core.repositories.sql import (
    SqlDirectoryConfigRepository,
    SqlSsoConfigRepository,
    SqlTenantSettingsReader,
    SqlTrustedDeviceRepository,
    SqlUserRepository,
)

__all__ = [
    "DirectoryConfigRepository",
    "PlatformSecurityDefaults",
    "SsoConfigRepository",
    "TenantSettingsReader",
    "TrustedDeviceRepository",
    "UserRepository",
    "SqlDirectoryConfigRepository",
    "SqlSsoConfigRepository",
    "SqlTenantSettingsReader",
    "SqlTrustedDeviceRepository",
    "SqlUserRepository",
]
