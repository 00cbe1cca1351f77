"""
Dependency injection utilities for FastAPI.
"""

import uuid
from typing import Annotated, Optional

import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.asyncio import Redis

from identity_core.core.config import settings
from identity_core.core.database import AsyncSession, get_db
from identity_core.core.encryption import SecretVault, get_secret_vault
from identity_core.core.exceptions import (
    AccountDisabledError,
    NotAuthenticatedError,
    PermissionDeniedError,
    TwoFaPendingError,
)
from identity_core.core.kv_store import KeyValueStore
from identity_core.core.tokens import TokenClaims, TokenIssuer
from identity_core.models.user import Role, User
from identity_core.repositories.base import (
    DirectoryConfigRepository,
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
from identity_core.services.directory.admin import DirectoryConfigService
from identity_core.services.directory.client import DirectoryClient
from identity_core.services.directory.scheduler import DirectorySyncScheduler
from identity_core.services.directory.sync import DirectorySyncEngine
from identity_core.services.enforcement import EnforcementResolver
from identity_core.services.login import LoginService
from identity_core.services.sso.admin import SsoConfigService
from identity_core.services.sso.federation import SsoFederationService
from identity_core.services.twofa import TrustedDeviceStore

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)

DbDep = Annotated[AsyncSession, Depends(get_db)]


# ============================================================================
# Redis Dependency
# ============================================================================

# Global Redis connection pool (singleton pattern)
_redis_pool: Redis | None = None

async def get_redis_pool() -> Redis:
    """
    Get or create global Redis connection pool.

    This ensures we reuse the same connection pool across all requests
    instead of creating a new connection for each request.
    """
    global _redis_pool

    if _redis_pool is None:
        _redis_pool = Redis(
            host=settings.redis.host,
            port=settings.redis.port,
            password=settings.redis.password if settings.redis.password else None,
            db=settings.redis.db,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.pool_size,
        )
        # Test connection
        try:
            await _redis_pool.ping()
        except Exception as e:
            _redis_pool = None
            raise RuntimeError(f"Failed to connect to Redis: {e}")

    return _redis_pool


async def close_redis_pool() -> None:
    global _redis_pool

    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None


# ============================================================================
# Application Singletons
# ============================================================================

def get_kv_store(request: Request) -> KeyValueStore:
    return request.app.state.kv_store


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_directory_client(request: Request) -> DirectoryClient:
    return request.app.state.directory_client


def get_directory_scheduler(request: Request) -> DirectorySyncScheduler:
    return request.app.state.directory_scheduler


def get_token_issuer() -> TokenIssuer:
    return TokenIssuer()


def get_vault() -> SecretVault:
    return get_secret_vault()


KeyValueStoreDep = Annotated[KeyValueStore, Depends(get_kv_store)]
HttpClientDep = Annotated[httpx.AsyncClient, Depends(get_http_client)]
DirectoryClientDep = Annotated[DirectoryClient, Depends(get_directory_client)]
DirectorySchedulerDep = Annotated[DirectorySyncScheduler, Depends(get_directory_scheduler)]
TokenIssuerDep = Annotated[TokenIssuer, Depends(get_token_issuer)]
VaultDep = Annotated[SecretVault, Depends(get_vault)]


# ============================================================================
# Repository Dependencies
# ============================================================================

def get_user_repository(db: DbDep) -> UserRepository:
    return SqlUserRepository(db)


def get_tenant_settings(db: DbDep) -> TenantSettingsReader:
    return SqlTenantSettingsReader(db)


def get_trusted_device_repository(db: DbDep) -> TrustedDeviceRepository:
    return SqlTrustedDeviceRepository(db)


def get_directory_config_repository(db: DbDep) -> DirectoryConfigRepository:
    return SqlDirectoryConfigRepository(db)


def get_sso_config_repository(db: DbDep) -> SsoConfigRepository:
    return SqlSsoConfigRepository(db)


UserRepositoryDep = Annotated[UserRepository, Depends(get_user_repository)]
TenantSettingsDep = Annotated[TenantSettingsReader, Depends(get_tenant_settings)]
TrustedDeviceRepositoryDep = Annotated[TrustedDeviceRepository, Depends(get_trusted_device_repository)]
DirectoryConfigRepositoryDep = Annotated[DirectoryConfigRepository, Depends(get_directory_config_repository)]
SsoConfigRepositoryDep = Annotated[SsoConfigRepository, Depends(get_sso_config_repository)]


# ============================================================================
# Service Dependencies
# ============================================================================

def get_directory_engine(
    configs: DirectoryConfigRepositoryDep,
    users: UserRepositoryDep,
    tenants: TenantSettingsDep,
    client: DirectoryClientDep,
    vault: VaultDep,
) -> DirectorySyncEngine:
    return DirectorySyncEngine(
        configs=configs,
        users=users,
        tenants=tenants,
        client=client,
        vault=vault,
    )


DirectoryEngineDep = Annotated[DirectorySyncEngine, Depends(get_directory_engine)]


def get_login_service(
    users: UserRepositoryDep,
    tenants: TenantSettingsDep,
    devices: TrustedDeviceRepositoryDep,
    directory: DirectoryEngineDep,
    tokens: TokenIssuerDep,
) -> LoginService:
    return LoginService(
        users=users,
        directory=directory,
        enforcement=EnforcementResolver(tenants),
        tenants=tenants,
        devices=TrustedDeviceStore(devices),
        tokens=tokens,
    )


def get_directory_config_service(
    configs: DirectoryConfigRepositoryDep,
    tenants: TenantSettingsDep,
    vault: VaultDep,
    scheduler: DirectorySchedulerDep,
) -> DirectoryConfigService:
    return DirectoryConfigService(
        configs=configs,
        tenants=tenants,
        vault=vault,
        scheduler=scheduler,
    )


def get_sso_service(
    configs: SsoConfigRepositoryDep,
    users: UserRepositoryDep,
    tenants: TenantSettingsDep,
    state_store: KeyValueStoreDep,
    vault: VaultDep,
    http_client: HttpClientDep,
) -> SsoFederationService:
    return SsoFederationService(
        configs=configs,
        users=users,
        tenants=tenants,
        state_store=state_store,
        vault=vault,
        http_client=http_client,
    )


def get_sso_config_service(
    configs: SsoConfigRepositoryDep,
    tenants: TenantSettingsDep,
    vault: VaultDep,
) -> SsoConfigService:
    return SsoConfigService(
        configs=configs,
        tenants=tenants,
        vault=vault,
    )


LoginServiceDep = Annotated[LoginService, Depends(get_login_service)]
DirectoryConfigServiceDep = Annotated[DirectoryConfigService, Depends(get_directory_config_service)]
SsoServiceDep = Annotated[SsoFederationService, Depends(get_sso_service)]
SsoConfigServiceDep = Annotated[SsoConfigService, Depends(get_sso_config_service)]


# ============================================================================
# Current User Dependency
# ============================================================================

async def get_token_claims(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    tokens: TokenIssuerDep,
) -> TokenClaims:
    """
    Decode the bearer token, partial or full.

    Raises 401 if no valid token was sent.
    """
    if credentials is None or not credentials.credentials:
        raise NotAuthenticatedError()
    return tokens.decode(credentials.credentials)


async def get_session_claims(
    claims: Annotated[TokenClaims, Depends(get_token_claims)],
) -> TokenClaims:
    """Claims of a full session. Partial tokens are refused."""
    if claims.twofa_pending:
        raise TwoFaPendingError()
    return claims


async def _load_user(users: UserRepository, claims: TokenClaims) -> User:
    user = await users.get(claims.user_id)
    if user is None:
        raise NotAuthenticatedError()
    if not user.is_active:
        raise AccountDisabledError()
    return user


async def get_current_user(
    claims: Annotated[TokenClaims, Depends(get_session_claims)],
    users: UserRepositoryDep,
) -> User:
    """
    Get current authenticated user.

    Raises 401 if not authenticated and 403 while 2FA is pending.
    """
    return await _load_user(users, claims)


async def get_pending_user(
    claims: Annotated[TokenClaims, Depends(get_token_claims)],
    users: UserRepositoryDep,
) -> User:
    """Current user for the 2FA endpoints, which also accept partial tokens."""
    return await _load_user(users, claims)


# Type aliases for current user dependencies
TokenClaimsDep = Annotated[TokenClaims, Depends(get_token_claims)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]
PendingUserDep = Annotated[User, Depends(get_pending_user)]


# ============================================================================
# Access Rules
# ============================================================================

ADMIN_ROLES = {Role.SUPER_ADMIN, Role.PARK_ADMIN, Role.COMPANY_ADMIN}


def can_administer_company(user: User, company_id: uuid.UUID) -> bool:
    """super_admin and park_admin manage any company, company_admin only their own."""
    if user.role in (Role.SUPER_ADMIN, Role.PARK_ADMIN):
        return True
    return user.role is Role.COMPANY_ADMIN and user.company_id == company_id


def ensure_company_access(user: User, company_id: uuid.UUID) -> None:
    if not can_administer_company(user, company_id):
        raise PermissionDeniedError("You do not have access to this company")


async def get_admin_user(current_user: CurrentUserDep) -> User:
    if current_user.role not in ADMIN_ROLES:
        raise PermissionDeniedError()
    return current_user


AdminUserDep = Annotated[User, Depends(get_admin_user)]


# ============================================================================
# Client Info Dependencies
# ============================================================================

async def get_client_ip(request: Request) -> str:
    """
    Get client IP address from request.

    Handles proxies and X-Forwarded-For header.
    """
    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        # Take the first IP (original client)
        return x_forwarded_for.split(",")[0].strip()

    return request.client.host if request.client else "unknown"


async def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


# Type aliases
ClientIpDep = Annotated[str, Depends(get_client_ip)]
UserAgentDep = Annotated[Optional[str], Depends(get_user_agent)]
