"""
Directory (LDAP) configuration endpoints.

Available to company admins for their own company and to park and super
admins for any company.
"""

import uuid

from fastapi import APIRouter, status

from identity_core.core.dependencies import (
    AdminUserDep,
    DirectoryConfigServiceDep,
    DirectoryEngineDep,
    DirectorySchedulerDep,
    ensure_company_access,
)
from identity_core.models.identity import DirectoryConfig
from identity_core.models.user import User
from identity_core.schemas.auth import MessageResponse
from identity_core.schemas.directory import (
    ConnectionTestResponse,
    DirectoryConfigCreate,
    DirectoryConfigResponse,
    DirectoryConfigUpdate,
    SyncResultResponse,
    SyncStatusResponse,
)
from identity_core.services.directory.admin import DirectoryConfigService

router = APIRouter(prefix="/directory", tags=["Directory"])


async def _authorized_config(
    service: DirectoryConfigService, config_id: uuid.UUID, user: User
) -> DirectoryConfig:
    config = await service.get(config_id)
    ensure_company_access(user, config.company_id)
    return config


@router.get("/config/{company_id}", response_model=DirectoryConfigResponse)
async def get_config(company_id: uuid.UUID, user: AdminUserDep, service: DirectoryConfigServiceDep):
    ensure_company_access(user, company_id)
    config = await service.get_for_company(company_id)
    return DirectoryConfigResponse.from_config(config)


@router.post("/config", response_model=DirectoryConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_config(body: DirectoryConfigCreate, user: AdminUserDep, service: DirectoryConfigServiceDep):
    ensure_company_access(user, body.company_id)
    config = await service.create(body)
    return DirectoryConfigResponse.from_config(config)


@router.put("/config/{config_id}", response_model=DirectoryConfigResponse)
async def update_config(
    config_id: uuid.UUID,
    body: DirectoryConfigUpdate,
    user: AdminUserDep,
    service: DirectoryConfigServiceDep,
):
    await _authorized_config(service, config_id, user)
    config = await service.update(config_id, body)
    return DirectoryConfigResponse.from_config(config)


@router.delete("/config/{config_id}", response_model=MessageResponse)
async def delete_config(config_id: uuid.UUID, user: AdminUserDep, service: DirectoryConfigServiceDep):
    await _authorized_config(service, config_id, user)
    await service.delete(config_id)
    return MessageResponse(message="Directory configuration deleted")


@router.post("/config/{config_id}/enable", response_model=DirectoryConfigResponse)
async def enable_config(config_id: uuid.UUID, user: AdminUserDep, service: DirectoryConfigServiceDep):
    await _authorized_config(service, config_id, user)
    config = await service.enable(config_id)
    return DirectoryConfigResponse.from_config(config)


@router.post("/config/{config_id}/disable", response_model=DirectoryConfigResponse)
async def disable_config(config_id: uuid.UUID, user: AdminUserDep, service: DirectoryConfigServiceDep):
    await _authorized_config(service, config_id, user)
    config = await service.disable(config_id)
    return DirectoryConfigResponse.from_config(config)


@router.post("/config/{config_id}/test", response_model=ConnectionTestResponse)
async def test_config(
    config_id: uuid.UUID,
    user: AdminUserDep,
    service: DirectoryConfigServiceDep,
    engine: DirectoryEngineDep,
):
    """Bind with the service account and count the users the filter matches."""
    await _authorized_config(service, config_id, user)
    result = await engine.test_connection(config_id)
    return ConnectionTestResponse(success=result.success, message=result.message, user_count=result.user_count)


@router.post("/config/{config_id}/sync", response_model=SyncResultResponse)
async def sync_config(
    config_id: uuid.UUID,
    user: AdminUserDep,
    service: DirectoryConfigServiceDep,
    scheduler: DirectorySchedulerDep,
):
    """
    Run a sync now.

    Returns 409 while a sync for the same company is running.
    """
    config = await _authorized_config(service, config_id, user)
    result = await scheduler.run_now(config.company_id)
    return SyncResultResponse(
        created=result.created,
        updated=result.updated,
        disabled=result.disabled,
        reactivated=result.reactivated,
        errors=result.errors,
        total_directory_users=result.total_directory_users,
    )


@router.get("/config/{config_id}/sync-status", response_model=SyncStatusResponse)
async def sync_status(config_id: uuid.UUID, user: AdminUserDep, service: DirectoryConfigServiceDep):
    await _authorized_config(service, config_id, user)
    return await service.sync_status(config_id)
