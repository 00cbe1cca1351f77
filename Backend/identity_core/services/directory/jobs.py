"""
Background directory jobs.

Each run opens its own database session so a scheduled sync never shares
state with a request.
"""

import uuid
from typing import Optional

from identity_core.core.database import get_db_context
from identity_core.core.encryption import SecretVault
from identity_core.core.tasks import KeyedLeases, TaskScheduler
from identity_core.repositories.sql import (
    SqlDirectoryConfigRepository,
    SqlTenantSettingsReader,
    SqlUserRepository,
)
from identity_core.services.directory.client import DirectoryClient
from identity_core.services.directory.scheduler import DirectorySyncScheduler
from identity_core.services.directory.sync import DirectorySyncEngine, SyncResult


def build_directory_scheduler(
    task_scheduler: TaskScheduler,
    client: DirectoryClient,
    vault: SecretVault,
    leases: Optional[KeyedLeases] = None,
) -> DirectorySyncScheduler:
    """Wire a DirectorySyncScheduler to the SQL repositories."""

    async def load_enabled_configs() -> list[tuple[uuid.UUID, int]]:
        async with get_db_context() as session:
            configs = await SqlDirectoryConfigRepository(session).list_enabled()
            return [(config.company_id, config.sync_interval_hours) for config in configs]

    async def run_sync(tenant_id: uuid.UUID) -> SyncResult:
        async with get_db_context() as session:
            engine = DirectorySyncEngine(
                configs=SqlDirectoryConfigRepository(session),
                users=SqlUserRepository(session),
                tenants=SqlTenantSettingsReader(session),
                client=client,
                vault=vault,
            )
            return await engine.sync_tenant(tenant_id)

    return DirectorySyncScheduler(
        load_enabled_configs=load_enabled_configs,
        run_sync=run_sync,
        task_scheduler=task_scheduler,
        leases=leases,
    )
