"""
Directory sync engine.

Reconciles a tenant's directory into the local users table:
- creates users seen for the first time
- updates email, name, role and DN of known users, reactivating them
- deactivates directory users of the tenant that disappeared

Per-user problems are collected in the result and never abort the run.
A run is marked as failed when the bind password cannot be decrypted, the
server cannot be reached or bound to, or an unexpected error escapes the
reconciliation. The failure is recorded before the error propagates.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from identity_core.core.encryption import DecryptionError, SecretVault
from identity_core.core.exceptions import (
    DirectoryConfigIncompleteError,
    DirectoryUnreachableError,
    NotFoundError,
)
from identity_core.models.identity import DirectoryConfig, SyncStatus
from identity_core.models.user import (
    DIRECTORY_ASSIGNABLE_ROLES,
    ROLE_PRIORITY,
    AuthSource,
    Role,
    User,
)
from identity_core.repositories.base import (
    DirectoryConfigRepository,
    TenantSettingsReader,
    UserRepository,
)
from identity_core.services.directory.client import (
    BindOutcome,
    ConnectionTestResult,
    DirectoryClient,
    DirectorySnapshot,
    DirectoryUser,
    Unreachable,
)


logger = structlog.get_logger(__name__)

UTC = timezone.utc


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    disabled: int = 0
    reactivated: int = 0
    errors: list[str] = field(default_factory=list)
    total_directory_users: int = 0

    @property
    def summary(self) -> str:
        return (
            f"Sync completed: {self.created} created, {self.updated} updated, "
            f"{self.disabled} disabled, {self.reactivated} reactivated "
            f"({len(self.errors)} errors)"
        )


def resolve_directory_role(
    groups: list[str],
    role_mappings: list[dict],
    default_role: Role,
) -> Role:
    """
    Pick the highest-priority role among the user's mapped groups.

    Group DNs compare case-insensitively. Mappings to roles outside
    DIRECTORY_ASSIGNABLE_ROLES are ignored.
    """
    role = default_role if default_role in DIRECTORY_ASSIGNABLE_ROLES else Role.USER
    member_of = {group.lower() for group in groups}

    for mapping in role_mappings or []:
        group_dn = (mapping.get("group_dn") or "").lower()
        try:
            mapped_role = Role(mapping.get("role"))
        except ValueError:
            continue
        if mapped_role not in DIRECTORY_ASSIGNABLE_ROLES or group_dn not in member_of:
            continue
        if ROLE_PRIORITY[mapped_role] > ROLE_PRIORITY[role]:
            role = mapped_role

    return role


class DirectorySyncEngine:
    """Directory authentication and reconciliation for one database session."""

    def __init__(
        self,
        configs: DirectoryConfigRepository,
        users: UserRepository,
        tenants: TenantSettingsReader,
        client: DirectoryClient,
        vault: SecretVault,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.configs = configs
        self.users = users
        self.tenants = tenants
        self.client = client
        self.vault = vault
        self.clock = clock

    def _bind_password(self, config: DirectoryConfig) -> str:
        if not config.bind_password_encrypted:
            return ""
        return self.vault.decrypt(config.bind_password_encrypted)

    # ===========================================
    # Connection test and authentication
    # ===========================================

    async def test_connection(self, config_id: uuid.UUID) -> ConnectionTestResult:
        config = await self.configs.get(config_id)
        if config is None:
            raise NotFoundError("Directory configuration not found")

        try:
            bind_password = self._bind_password(config)
        except DecryptionError as e:
            return ConnectionTestResult(success=False, message=f"Connection failed: {e}")

        return await self.client.test_connection(config, bind_password)

    async def authenticate_user(
        self,
        email: str,
        password: str,
        tenant_id: Optional[uuid.UUID],
    ) -> BindOutcome:
        """Verify a password against the tenant's directory."""
        config = await self.configs.get_by_company(tenant_id) if tenant_id else None
        if config is None or not config.is_enabled:
            return Unreachable("Directory authentication is not configured for this company")

        try:
            bind_password = self._bind_password(config)
        except DecryptionError as e:
            logger.error("Cannot decrypt directory bind password", company_id=str(tenant_id), error=str(e))
            return Unreachable("Bind credential unavailable")

        return await self.client.verify_password(config, bind_password, email, password)

    # ===========================================
    # Sync
    # ===========================================

    async def _finish(
        self,
        config: DirectoryConfig,
        status: SyncStatus,
        message: str,
        user_count: Optional[int] = None,
    ) -> None:
        config.last_sync_status = status
        config.last_sync_message = message
        config.last_sync_at = self.clock()
        if user_count is not None:
            config.last_sync_user_count = user_count
        await self.configs.save(config)

    async def _fail(self, config_id: uuid.UUID, config: DirectoryConfig, message: str) -> None:
        # A failed write may have rolled the session back and expired the config
        config = await self.configs.get(config_id) or config
        await self._finish(config, SyncStatus.ERROR, f"Sync failed: {message}")

    async def sync_tenant(self, tenant_id: uuid.UUID) -> SyncResult:
        """
        Run one reconciliation of the tenant's directory.

        Raises:
            DirectoryConfigIncompleteError: No enabled configuration
            DirectoryUnreachableError: Bind credential or server unavailable
        """
        config = await self.configs.get_by_company(tenant_id)
        if config is None:
            raise DirectoryConfigIncompleteError("Directory configuration not found for this company")
        if not config.is_enabled:
            raise DirectoryConfigIncompleteError("Directory sync is disabled for this company")

        config_id = config.id
        log = logger.bind(company_id=str(tenant_id))
        started_at = self.clock()
        config.last_sync_status = SyncStatus.IN_PROGRESS
        config.last_sync_message = "Sync started..."
        await self.configs.save(config)

        try:
            bind_password = self._bind_password(config)
        except DecryptionError as e:
            await self._fail(config_id, config, str(e))
            raise DirectoryUnreachableError("Cannot decrypt directory bind password")

        try:
            snapshot = await self.client.fetch_snapshot(config, bind_password)
            result = await self._reconcile(config, snapshot)
            config = await self.configs.get(config_id) or config
            await self._finish(config, SyncStatus.SUCCESS, result.summary, result.total_directory_users)
        except DirectoryUnreachableError as e:
            log.error("Directory sync failed", error=e.message)
            await self._fail(config_id, config, e.message)
            raise
        except Exception as e:
            log.exception("Directory sync failed", error=str(e))
            await self._fail(config_id, config, str(e))
            raise

        log.info(
            "Directory sync completed",
            created=result.created,
            updated=result.updated,
            disabled=result.disabled,
            reactivated=result.reactivated,
            errors=len(result.errors),
            duration_ms=round((self.clock() - started_at).total_seconds() * 1000, 2),
        )
        return result

    async def _reconcile(self, config: DirectoryConfig, snapshot: DirectorySnapshot) -> SyncResult:
        result = SyncResult(total_directory_users=len(snapshot.users))
        result.errors.extend(snapshot.warnings)
        # Read up front: a failed per-user write expires the loaded config
        company_id = config.company_id
        role_mappings = list(config.role_mappings or [])
        default_role = config.default_role
        park_id = await self.tenants.get_company_park_id(company_id)
        seen_dns: set[str] = set()

        for entry in snapshot.users:
            if not entry.email:
                result.errors.append(f"Skipping {entry.dn}: no email attribute")
                continue
            seen_dns.add(entry.dn.lower())
            role = resolve_directory_role(snapshot.groups_of(entry.dn), role_mappings, default_role)
            try:
                await self._apply_entry(company_id, entry, role, park_id, result)
            except Exception as e:
                logger.warning("Directory user sync failed", dn=entry.dn, error=str(e))
                result.errors.append(f"Failed to sync {entry.email}: {e}")

        stale = [
            (user, user.email)
            for user in await self.users.list_active_directory_users(company_id)
            if not (user.directory_dn and user.directory_dn.lower() in seen_dns)
        ]
        for user, email in stale:
            user.is_active = False
            try:
                await self.users.save(user)
            except Exception as e:
                logger.warning("Directory user deactivation failed", email=email, error=str(e))
                result.errors.append(f"Failed to disable {email}: {e}")
                continue
            result.disabled += 1

        return result

    async def _apply_entry(
        self,
        company_id: uuid.UUID,
        entry: DirectoryUser,
        role: Role,
        park_id: Optional[uuid.UUID],
        result: SyncResult,
    ) -> None:
        name = entry.name or entry.email.split("@")[0]

        user = await self.users.find_by_directory_dn(company_id, entry.dn)
        if user is None:
            user = await self.users.find_by_email(entry.email)
            if user is not None and user.company_id != company_id:
                result.errors.append(f"Skipping {entry.email}: email exists in another company")
                return

        if user is None:
            await self.users.add(User(
                email=entry.email,
                name=name,
                role=role,
                auth_source=AuthSource.DIRECTORY,
                company_id=company_id,
                park_id=park_id,
                directory_dn=entry.dn,
                is_active=True,
                twofa_enabled=False,
            ))
            result.created += 1
            return

        user.email = entry.email
        user.name = name
        # Platform roles granted outside the directory are left alone
        if user.role in DIRECTORY_ASSIGNABLE_ROLES:
            user.role = role
        user.directory_dn = entry.dn
        if user.auth_source is AuthSource.LOCAL:
            user.auth_source = AuthSource.DIRECTORY
        reactivated = not user.is_active
        user.is_active = True
        await self.users.save(user)

        if reactivated:
            result.reactivated += 1
        result.updated += 1
