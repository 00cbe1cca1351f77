"""SSO configuration administration."""

import uuid
from datetime import datetime, timezone
from typing import Callable

import structlog

from identity_core.core.encryption import SecretVault
from identity_core.core.exceptions import DuplicateConfigForTenantError, NotFoundError
from identity_core.models.identity import SsoConfig
from identity_core.repositories.base import SsoConfigRepository, TenantSettingsReader
from identity_core.schemas.sso import SsoConfigCreate, SsoConfigUpdate


logger = structlog.get_logger(__name__)

# Optional columns an update may clear with an explicit null
CLEARABLE_FIELDS = {"saml_issuer", "saml_callback_url"}

UTC = timezone.utc


class SsoConfigService:

    def __init__(
        self,
        configs: SsoConfigRepository,
        tenants: TenantSettingsReader,
        vault: SecretVault,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.configs = configs
        self.tenants = tenants
        self.vault = vault
        self.clock = clock

    async def get(self, config_id: uuid.UUID) -> SsoConfig:
        config = await self.configs.get(config_id)
        if config is None:
            raise NotFoundError("SSO configuration not found")
        return config

    async def get_for_company(self, company_id: uuid.UUID) -> SsoConfig:
        config = await self.configs.get_by_company(company_id)
        if config is None:
            raise NotFoundError("SSO configuration not found")
        return config

    async def create(self, data: SsoConfigCreate) -> SsoConfig:
        if not await self.tenants.company_exists(data.company_id):
            raise NotFoundError("Company not found")
        if await self.configs.get_by_company(data.company_id) is not None:
            raise DuplicateConfigForTenantError("SSO configuration already exists for this company")

        now = self.clock()
        secret = data.oidc_client_secret
        config = SsoConfig(
            id=uuid.uuid4(),
            **data.model_dump(exclude={"oidc_client_secret"}),
            oidc_client_secret_encrypted=self.vault.encrypt(secret) if secret else None,
            is_enabled=False,
            created_at=now,
            updated_at=now,
        )
        config = await self.configs.add(config)
        logger.info("SSO configuration created", company_id=str(config.company_id), protocol=config.protocol.value)
        return config

    async def update(self, config_id: uuid.UUID, data: SsoConfigUpdate) -> SsoConfig:
        config = await self.get(config_id)

        changes = data.model_dump(exclude_unset=True, exclude={"oidc_client_secret"})
        for key, value in changes.items():
            if value is not None or key in CLEARABLE_FIELDS:
                setattr(config, key, value)
        if data.oidc_client_secret:
            config.oidc_client_secret_encrypted = self.vault.encrypt(data.oidc_client_secret)
        config.updated_at = self.clock()

        config = await self.configs.save(config)
        logger.info("SSO configuration updated", config_id=str(config.id), fields=sorted(changes))
        return config

    async def delete(self, config_id: uuid.UUID) -> None:
        config = await self.get(config_id)
        await self.configs.delete(config)
        logger.info("SSO configuration deleted", company_id=str(config.company_id))
