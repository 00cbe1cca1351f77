"""
Directory configuration administration.

Keeps the sync scheduler in step with configuration changes: enabling
arms the tenant's timer, disabling or deleting cancels it, and an interval
change re-arms it while enabled.
"""

import uuid
from typing import Optional

import structlog

from identity_core.core.encryption import SecretVault
from identity_core.core.exceptions import (
    DirectoryConfigIncompleteError,
    DuplicateConfigForTenantError,
    NotFoundError,
)
from identity_core.models.identity import DirectoryConfig, SyncStatus
from identity_core.repositories.base import DirectoryConfigRepository, TenantSettingsReader
from identity_core.schemas.directory import (
    DirectoryConfigCreate,
    DirectoryConfigUpdate,
    SyncStatusResponse,
)
from identity_core.services.directory.scheduler import DirectorySyncScheduler


logger = structlog.get_logger(__name__)

# Optional columns an update may clear with an explicit null
CLEARABLE_FIELDS = {"group_search_base", "group_filter"}


class DirectoryConfigService:

    def __init__(
        self,
        configs: DirectoryConfigRepository,
        tenants: TenantSettingsReader,
        vault: SecretVault,
        scheduler: Optional[DirectorySyncScheduler] = None,
    ):
        self.configs = configs
        self.tenants = tenants
        self.vault = vault
        self.scheduler = scheduler

    async def get(self, config_id: uuid.UUID) -> DirectoryConfig:
        config = await self.configs.get(config_id)
        if config is None:
            raise NotFoundError("Directory configuration not found")
        return config

    async def get_for_company(self, company_id: uuid.UUID) -> DirectoryConfig:
        config = await self.configs.get_by_company(company_id)
        if config is None:
            raise NotFoundError("Directory configuration not found")
        return config

    async def create(self, data: DirectoryConfigCreate) -> DirectoryConfig:
        if not await self.tenants.company_exists(data.company_id):
            raise NotFoundError("Company not found")
        if await self.configs.get_by_company(data.company_id) is not None:
            raise DuplicateConfigForTenantError("Directory configuration already exists for this company")

        fields = data.model_dump(exclude={"bind_password", "role_mappings"})
        config = DirectoryConfig(
            **fields,
            role_mappings=[m.model_dump(mode="json") for m in data.role_mappings],
            bind_password_encrypted=self.vault.encrypt(data.bind_password),
            is_enabled=False,
            last_sync_status=SyncStatus.NEVER,
        )
        config = await self.configs.add(config)
        logger.info("Directory configuration created", company_id=str(config.company_id))
        return config

    async def update(self, config_id: uuid.UUID, data: DirectoryConfigUpdate) -> DirectoryConfig:
        config = await self.get(config_id)
        previous_interval = config.sync_interval_hours

        changes = data.model_dump(exclude_unset=True, exclude={"bind_password", "role_mappings"})
        for key, value in changes.items():
            if value is not None or key in CLEARABLE_FIELDS:
                setattr(config, key, value)
        if data.role_mappings is not None:
            config.role_mappings = [m.model_dump(mode="json") for m in data.role_mappings]
        if data.bind_password:
            config.bind_password_encrypted = self.vault.encrypt(data.bind_password)

        config = await self.configs.save(config)

        if config.is_enabled and config.sync_interval_hours != previous_interval and self.scheduler:
            self.scheduler.schedule_tenant(config.company_id, config.sync_interval_hours)
        return config

    async def delete(self, config_id: uuid.UUID) -> None:
        config = await self.get(config_id)
        if self.scheduler:
            self.scheduler.unschedule_tenant(config.company_id)
        await self.configs.delete(config)
        logger.info("Directory configuration deleted", company_id=str(config.company_id))

    async def enable(self, config_id: uuid.UUID) -> DirectoryConfig:
        config = await self.get(config_id)
        missing = [
            name for name, value in (
                ("server_url", config.server_url),
                ("bind_dn", config.bind_dn),
                ("bind_password", config.bind_password_encrypted),
                ("search_base", config.search_base),
            )
            if not value
        ]
        if missing:
            raise DirectoryConfigIncompleteError(f"Missing required fields: {', '.join(missing)}")

        config.is_enabled = True
        config = await self.configs.save(config)
        if self.scheduler and config.sync_interval_hours > 0:
            self.scheduler.schedule_tenant(config.company_id, config.sync_interval_hours)
        return config

    async def disable(self, config_id: uuid.UUID) -> DirectoryConfig:
        config = await self.get(config_id)
        config.is_enabled = False
        config = await self.configs.save(config)
        if self.scheduler:
            self.scheduler.unschedule_tenant(config.company_id)
        return config

    async def sync_status(self, config_id: uuid.UUID) -> SyncStatusResponse:
        config = await self.get(config_id)
        return SyncStatusResponse(
            is_enabled=config.is_enabled,
            is_scheduled=bool(self.scheduler and self.scheduler.is_scheduled(config.company_id)),
            is_syncing=bool(self.scheduler and self.scheduler.is_syncing(config.company_id)),
            sync_interval_hours=config.sync_interval_hours,
            last_sync_at=config.last_sync_at,
            last_sync_status=config.last_sync_status.value,
            last_sync_message=config.last_sync_message,
            last_sync_user_count=config.last_sync_user_count,
        )
