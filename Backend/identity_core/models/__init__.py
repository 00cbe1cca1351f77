# Database models
from identity_core.models.user import (
    User,
    # User enums
    Role,
    AuthSource,
    DIRECTORY_ASSIGNABLE_ROLES,
    ROLE_PRIORITY,
)
from identity_core.models.tenancy import (
    Park,
    Company,
    PlatformSettings,
    # Enforcement enums
    Enforcement,
    LevelEnforcement,
    TwoFaMode,
)
from identity_core.models.identity import (
    DirectoryConfig,
    SsoConfig,
    TrustedDevice,
    SsoProtocol,
    SyncStatus,
)

__all__ = [
    "User",
    "Role",
    "AuthSource",
    "DIRECTORY_ASSIGNABLE_ROLES",
    "ROLE_PRIORITY",
    "Park",
    "Company",
    "PlatformSettings",
    "Enforcement",
    "LevelEnforcement",
    "TwoFaMode",
    "DirectoryConfig",
    "SsoConfig",
    "TrustedDevice",
    "SsoProtocol",
    "SyncStatus",
]
