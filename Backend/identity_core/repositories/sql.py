"""
SQLAlchemy implementations of the repository interfaces.

Each write commits immediately so a record counted by a sync run or a login
step is durable before the caller moves on. A failed statement rolls the
session back before the error propagates, so a caller that handles it can
keep using the same session.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from identity_core.core.config import settings
from identity_core.models.identity import DirectoryConfig, SsoConfig, TrustedDevice
from identity_core.models.tenancy import (
    PLATFORM_SETTINGS_ID,
    Company,
    LevelEnforcement,
    Park,
    PlatformSettings,
)
from identity_core.models.user import AuthSource, User
from identity_core.repositories.base import (
    DirectoryConfigRepository,
    PlatformSecurityDefaults,
    SsoConfigRepository,
    TenantSettingsReader,
    TrustedDeviceRepository,
    UserRepository,
)


class _SqlRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _execute(self, statement):
        try:
            return await self.db.execute(statement)
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def _persist(self, instance):
        self.db.add(instance)
        await self._commit()
        return instance

    async def _remove(self, instance) -> None:
        await self.db.delete(instance)
        await self._commit()


class SqlUserRepository(_SqlRepository, UserRepository):

    async def get(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def find_by_email(self, email: str) -> Optional[User]:
        result = await self._execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def find_by_directory_dn(self, company_id: uuid.UUID, dn: str) -> Optional[User]:
        result = await self._execute(
            select(User).where(User.company_id == company_id, User.directory_dn == dn)
        )
        return result.scalars().first()

    async def find_by_sso_subject(self, provider_id: uuid.UUID, subject_id: str) -> Optional[User]:
        result = await self._execute(
            select(User).where(
                User.sso_provider_id == provider_id,
                User.sso_subject_id == subject_id,
            )
        )
        return result.scalars().first()

    async def list_active_directory_users(self, company_id: uuid.UUID) -> list[User]:
        result = await self._execute(
            select(User).where(
                User.company_id == company_id,
                User.auth_source == AuthSource.DIRECTORY,
                User.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def add(self, user: User) -> User:
        return await self._persist(user)

    async def save(self, user: User) -> User:
        return await self._persist(user)


class SqlDirectoryConfigRepository(_SqlRepository, DirectoryConfigRepository):

    async def get(self, config_id: uuid.UUID) -> Optional[DirectoryConfig]:
        return await self.db.get(DirectoryConfig, config_id)

    async def get_by_company(self, company_id: uuid.UUID) -> Optional[DirectoryConfig]:
        result = await self._execute(
            select(DirectoryConfig).where(DirectoryConfig.company_id == company_id)
        )
        return result.scalar_one_or_none()

    async def list_enabled(self) -> list[DirectoryConfig]:
        result = await self._execute(
            select(DirectoryConfig).where(DirectoryConfig.is_enabled.is_(True))
        )
        return list(result.scalars().all())

    async def add(self, config: DirectoryConfig) -> DirectoryConfig:
        return await self._persist(config)

    async def save(self, config: DirectoryConfig) -> DirectoryConfig:
        return await self._persist(config)

    async def delete(self, config: DirectoryConfig) -> None:
        await self._remove(config)


class SqlSsoConfigRepository(_SqlRepository, SsoConfigRepository):

    async def get(self, config_id: uuid.UUID) -> Optional[SsoConfig]:
        return await self.db.get(SsoConfig, config_id)

    async def get_by_company(self, company_id: uuid.UUID) -> Optional[SsoConfig]:
        result = await self._execute(
            select(SsoConfig).where(SsoConfig.company_id == company_id)
        )
        return result.scalar_one_or_none()

    async def list_enabled(self) -> list[SsoConfig]:
        result = await self._execute(
            select(SsoConfig).where(SsoConfig.is_enabled.is_(True))
        )
        return list(result.scalars().all())

    async def add(self, config: SsoConfig) -> SsoConfig:
        return await self._persist(config)

    async def save(self, config: SsoConfig) -> SsoConfig:
        return await self._persist(config)

    async def delete(self, config: SsoConfig) -> None:
        await self._remove(config)


class SqlTrustedDeviceRepository(_SqlRepository, TrustedDeviceRepository):

    async def get(self, device_id: uuid.UUID) -> Optional[TrustedDevice]:
        return await self.db.get(TrustedDevice, device_id)

    async def find_by_token(self, token: str) -> Optional[TrustedDevice]:
        result = await self._execute(
            select(TrustedDevice).where(TrustedDevice.token == token)
        )
        return result.scalar_one_or_none()

    async def list_active_for_user(self, user_id: uuid.UUID, now: datetime) -> list[TrustedDevice]:
        result = await self._execute(
            select(TrustedDevice)
            .where(TrustedDevice.user_id == user_id, TrustedDevice.expires_at > now)
            .order_by(TrustedDevice.created_at.desc())
        )
        return list(result.scalars().all())

    async def add(self, device: TrustedDevice) -> TrustedDevice:
        return await self._persist(device)

    async def save(self, device: TrustedDevice) -> TrustedDevice:
        return await self._persist(device)

    async def delete(self, device: TrustedDevice) -> None:
        await self._remove(device)

    async def delete_all_for_user(self, user_id: uuid.UUID) -> int:
        result = await self._execute(
            delete(TrustedDevice).where(TrustedDevice.user_id == user_id)
        )
        await self._commit()
        return result.rowcount or 0


class SqlTenantSettingsReader(_SqlRepository, TenantSettingsReader):

    async def get_platform_defaults(self) -> PlatformSecurityDefaults:
        row = await self.db.get(PlatformSettings, PLATFORM_SETTINGS_ID)
        if row is None:
            return PlatformSecurityDefaults(trusted_device_days=settings.twofa.default_trusted_device_days)
        return PlatformSecurityDefaults(
            enforcement=row.twofa_enforcement,
            twofa_mode=row.twofa_mode,
            trusted_device_days=row.twofa_trusted_device_days,
        )

    async def get_park_enforcement(self, park_id: uuid.UUID) -> Optional[LevelEnforcement]:
        result = await self._execute(
            select(Park.twofa_enforcement).where(Park.id == park_id)
        )
        return result.scalar_one_or_none()

    async def get_company_enforcement(self, company_id: uuid.UUID) -> Optional[LevelEnforcement]:
        result = await self._execute(
            select(Company.twofa_enforcement).where(Company.id == company_id)
        )
        return result.scalar_one_or_none()

    async def get_company_park_id(self, company_id: uuid.UUID) -> Optional[uuid.UUID]:
        result = await self._execute(
            select(Company.park_id).where(Company.id == company_id)
        )
        return result.scalar_one_or_none()

    async def company_exists(self, company_id: uuid.UUID) -> bool:
        return await self.db.get(Company, company_id) is not None
