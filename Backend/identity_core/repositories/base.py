"""
Repository interfaces consumed by the identity services.

Services receive these through their constructors and never open database
sessions themselves. Writes are durable once the call returns.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from identity_core.models.identity import DirectoryConfig, SsoConfig, TrustedDevice
from identity_core.models.tenancy import Enforcement, LevelEnforcement, TwoFaMode
from identity_core.models.user import User


class UserRepository(ABC):

    @abstractmethod
    async def get(self, user_id: uuid.UUID) -> Optional[User]: ...

    @abstractmethod
    async def find_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive lookup across all tenants."""

    @abstractmethod
    async def find_by_directory_dn(self, company_id: uuid.UUID, dn: str) -> Optional[User]: ...

    @abstractmethod
    async def find_by_sso_subject(self, provider_id: uuid.UUID, subject_id: str) -> Optional[User]: ...

    @abstractmethod
    async def list_active_directory_users(self, company_id: uuid.UUID) -> list[User]: ...

    @abstractmethod
    async def add(self, user: User) -> User: ...

    @abstractmethod
    async def save(self, user: User) -> User: ...


class DirectoryConfigRepository(ABC):

    @abstractmethod
    async def get(self, config_id: uuid.UUID) -> Optional[DirectoryConfig]: ...

    @abstractmethod
    async def get_by_company(self, company_id: uuid.UUID) -> Optional[DirectoryConfig]: ...

    @abstractmethod
    async def list_enabled(self) -> list[DirectoryConfig]: ...

    @abstractmethod
    async def add(self, config: DirectoryConfig) -> DirectoryConfig: ...

    @abstractmethod
    async def save(self, config: DirectoryConfig) -> DirectoryConfig: ...

    @abstractmethod
    async def delete(self, config: DirectoryConfig) -> None: ...


class SsoConfigRepository(ABC):

    @abstractmethod
    async def get(self, config_id: uuid.UUID) -> Optional[SsoConfig]: ...

    @abstractmethod
    async def get_by_company(self, company_id: uuid.UUID) -> Optional[SsoConfig]: ...

    @abstractmethod
    async def list_enabled(self) -> list[SsoConfig]: ...

    @abstractmethod
    async def add(self, config: SsoConfig) -> SsoConfig: ...

    @abstractmethod
    async def save(self, config: SsoConfig) -> SsoConfig: ...

    @abstractmethod
    async def delete(self, config: SsoConfig) -> None: ...


class TrustedDeviceRepository(ABC):

    @abstractmethod
    async def get(self, device_id: uuid.UUID) -> Optional[TrustedDevice]: ...

    @abstractmethod
    async def find_by_token(self, token: str) -> Optional[TrustedDevice]: ...

    @abstractmethod
    async def list_active_for_user(self, user_id: uuid.UUID, now: datetime) -> list[TrustedDevice]: ...

    @abstractmethod
    async def add(self, device: TrustedDevice) -> TrustedDevice: ...

    @abstractmethod
    async def save(self, device: TrustedDevice) -> TrustedDevice: ...

    @abstractmethod
    async def delete(self, device: TrustedDevice) -> None: ...

    @abstractmethod
    async def delete_all_for_user(self, user_id: uuid.UUID) -> int: ...


@dataclass(frozen=True)
class PlatformSecurityDefaults:
    enforcement: Enforcement = Enforcement.DISABLED
    twofa_mode: TwoFaMode = TwoFaMode.TRUSTED_DEVICE
    trusted_device_days: int = 30


class TenantSettingsReader(ABC):
    """Read access to park/company enforcement levels and platform defaults."""

    @abstractmethod
    async def get_platform_defaults(self) -> PlatformSecurityDefaults: ...

    @abstractmethod
    async def get_park_enforcement(self, park_id: uuid.UUID) -> Optional[LevelEnforcement]: ...

    @abstractmethod
    async def get_company_enforcement(self, company_id: uuid.UUID) -> Optional[LevelEnforcement]: ...

    @abstractmethod
    async def get_company_park_id(self, company_id: uuid.UUID) -> Optional[uuid.UUID]: ...

    @abstractmethod
    async def company_exists(self, company_id: uuid.UUID) -> bool: ...
