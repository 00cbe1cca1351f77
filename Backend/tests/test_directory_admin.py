"""
Tests for directory configuration administration.

Tests cover:
- Create with encrypted bind password and one config per company
- Enable requiring a complete configuration
- Scheduler timers following enable, disable, delete and interval edits
- Partial updates, including clearing optional fields with null
- Sync status reporting
"""

import uuid

import pytest

from identity_core.core.exceptions import (
    DirectoryConfigIncompleteError,
    DuplicateConfigForTenantError,
    NotFoundError,
)
from identity_core.core.tasks import KeyedLeases
from identity_core.models.identity import SyncStatus
from identity_core.models.user import Role
from identity_core.schemas.directory import (
    DirectoryConfigCreate,
    DirectoryConfigResponse,
    DirectoryConfigUpdate,
)
from identity_core.services.directory.admin import DirectoryConfigService
from identity_core.services.directory.scheduler import DirectorySyncScheduler
from identity_core.services.directory.sync import SyncResult

from fakes import ManualTaskScheduler


@pytest.fixture
def scheduler():
    async def load():
        return []

    async def run(tenant_id):
        return SyncResult()

    return DirectorySyncScheduler(
        load_enabled_configs=load,
        run_sync=run,
        task_scheduler=ManualTaskScheduler(),
        leases=KeyedLeases(),
        refresh_interval_seconds=300,
    )


@pytest.fixture
def admin(directory_configs, tenants, vault, scheduler):
    return DirectoryConfigService(directory_configs, tenants, vault, scheduler)


@pytest.fixture
def company_id(tenants):
    return tenants.add_company()


def payload(company_id, **fields):
    values = dict(
        company_id=company_id,
        server_url="ldap://ldap.example.com:389",
        bind_dn="cn=svc,dc=example,dc=com",
        bind_password="svc-secret",
        search_base="ou=people,dc=example,dc=com",
        sync_interval_hours=6,
    )
    values.update(fields)
    return DirectoryConfigCreate(**values)


class TestCreate:
    """Tests for creating directory configurations."""

    @pytest.mark.asyncio
    async def test_created_disabled_with_encrypted_password(self, admin, company_id, vault, scheduler):
        config = await admin.create(payload(company_id))

        assert not config.is_enabled
        assert config.last_sync_status is SyncStatus.NEVER
        assert vault.decrypt(config.bind_password_encrypted) == "svc-secret"
        assert not scheduler.is_scheduled(company_id)

    @pytest.mark.asyncio
    async def test_one_config_per_company(self, admin, company_id):
        await admin.create(payload(company_id))

        with pytest.raises(DuplicateConfigForTenantError):
            await admin.create(payload(company_id))

    @pytest.mark.asyncio
    async def test_unknown_company(self, admin):
        with pytest.raises(NotFoundError):
            await admin.create(payload(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_response_hides_password(self, admin, company_id):
        config = await admin.create(payload(company_id))

        response = DirectoryConfigResponse.from_config(config).model_dump()

        assert response["has_bind_password"] is True
        assert "bind_password" not in response
        assert "bind_password_encrypted" not in response

    def test_schema_rejects_platform_roles(self, company_id):
        with pytest.raises(ValueError):
            payload(company_id, default_role=Role.PARK_ADMIN)
        with pytest.raises(ValueError):
            payload(company_id, role_mappings=[{"group_dn": "cn=ops", "role": "super_admin"}])

    def test_schema_rejects_non_ldap_url(self, company_id):
        with pytest.raises(ValueError):
            payload(company_id, server_url="https://ldap.example.com")


class TestScheduling:
    """Tests for keeping sync timers in step with configuration."""

    @pytest.mark.asyncio
    async def test_enable_arms_timer(self, admin, company_id, scheduler):
        config = await admin.create(payload(company_id))

        await admin.enable(config.id)

        assert scheduler.scheduled_tenants == {company_id: 6}

    @pytest.mark.asyncio
    async def test_enable_with_zero_interval_stays_manual(self, admin, company_id, scheduler):
        config = await admin.create(payload(company_id, sync_interval_hours=0))

        enabled = await admin.enable(config.id)

        assert enabled.is_enabled
        assert not scheduler.is_scheduled(company_id)

    @pytest.mark.asyncio
    async def test_enable_requires_bind_password(self, admin, company_id):
        config = await admin.create(payload(company_id))
        config.bind_password_encrypted = None

        with pytest.raises(DirectoryConfigIncompleteError, match="bind_password"):
            await admin.enable(config.id)
        assert not config.is_enabled

    @pytest.mark.asyncio
    async def test_disable_cancels_timer(self, admin, company_id, scheduler):
        config = await admin.create(payload(company_id))
        await admin.enable(config.id)

        disabled = await admin.disable(config.id)

        assert not disabled.is_enabled
        assert not scheduler.is_scheduled(company_id)

    @pytest.mark.asyncio
    async def test_interval_change_rearms(self, admin, company_id, scheduler):
        config = await admin.create(payload(company_id))
        await admin.enable(config.id)

        await admin.update(config.id, DirectoryConfigUpdate(sync_interval_hours=12))

        assert scheduler.scheduled_tenants == {company_id: 12}

    @pytest.mark.asyncio
    async def test_interval_change_while_disabled_does_not_arm(self, admin, company_id, scheduler):
        config = await admin.create(payload(company_id))

        await admin.update(config.id, DirectoryConfigUpdate(sync_interval_hours=12))

        assert not scheduler.is_scheduled(company_id)

    @pytest.mark.asyncio
    async def test_delete_cancels_timer(self, admin, company_id, scheduler, directory_configs):
        config = await admin.create(payload(company_id))
        await admin.enable(config.id)

        await admin.delete(config.id)

        assert not scheduler.is_scheduled(company_id)
        assert directory_configs.configs == {}


class TestUpdateAndStatus:
    """Tests for partial updates and sync status."""

    @pytest.mark.asyncio
    async def test_update_keeps_password_when_omitted(self, admin, company_id, vault):
        config = await admin.create(payload(company_id))

        updated = await admin.update(config.id, DirectoryConfigUpdate(bind_dn="cn=other,dc=example,dc=com"))

        assert updated.bind_dn == "cn=other,dc=example,dc=com"
        assert vault.decrypt(updated.bind_password_encrypted) == "svc-secret"

    @pytest.mark.asyncio
    async def test_update_clears_group_search_with_null(self, admin, company_id):
        config = await admin.create(payload(
            company_id,
            group_search_base="ou=groups,dc=example,dc=com",
            group_filter="(objectClass=groupOfNames)",
        ))

        updated = await admin.update(
            config.id,
            DirectoryConfigUpdate.model_validate({"group_search_base": None, "group_filter": None}),
        )

        assert updated.group_search_base is None
        assert updated.group_filter is None
        assert updated.server_url == "ldap://ldap.example.com:389"

    @pytest.mark.asyncio
    async def test_null_for_required_field_is_ignored(self, admin, company_id):
        config = await admin.create(payload(company_id))

        updated = await admin.update(config.id, DirectoryConfigUpdate.model_validate({"bind_dn": None}))

        assert updated.bind_dn == "cn=svc,dc=example,dc=com"

    @pytest.mark.asyncio
    async def test_update_replaces_role_mappings(self, admin, company_id):
        config = await admin.create(payload(company_id))

        updated = await admin.update(
            config.id,
            DirectoryConfigUpdate(role_mappings=[{"group_dn": "cn=admins", "role": "company_admin"}]),
        )

        assert updated.role_mappings == [{"group_dn": "cn=admins", "role": "company_admin"}]

    @pytest.mark.asyncio
    async def test_sync_status(self, admin, company_id):
        config = await admin.create(payload(company_id))
        await admin.enable(config.id)

        status = await admin.sync_status(config.id)

        assert status.is_enabled
        assert status.is_scheduled
        assert not status.is_syncing
        assert status.last_sync_status == "never"
        assert status.sync_interval_hours == 6

    @pytest.mark.asyncio
    async def test_get_for_company_missing(self, admin):
        with pytest.raises(NotFoundError):
            await admin.get_for_company(uuid.uuid4())
