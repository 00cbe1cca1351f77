"""
Directory (LDAP) configuration schemas.

Bind passwords are write-only: requests may carry one, responses only say
whether one is stored.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from identity_core.models.identity import DirectoryConfig
from identity_core.models.user import DIRECTORY_ASSIGNABLE_ROLES, Role


class RoleMapping(BaseModel):
    group_dn: str = Field(min_length=1, max_length=500)
    role: Role

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: Role) -> Role:
        if v not in DIRECTORY_ASSIGNABLE_ROLES:
            raise ValueError("Only user and company_admin can be mapped from directory groups")
        return v


class DirectoryConfigBase(BaseModel):
    server_url: str = Field(min_length=1, max_length=500)
    bind_dn: str = Field(min_length=1, max_length=500)
    search_base: str = Field(min_length=1, max_length=500)
    user_filter: str = Field("(objectClass=inetOrgPerson)", max_length=500)
    username_attribute: str = Field("uid", max_length=100)
    email_attribute: str = Field("mail", max_length=100)
    name_attribute: str = Field("cn", max_length=100)
    group_search_base: Optional[str] = Field(None, max_length=500)
    group_filter: Optional[str] = Field(None, max_length=500)
    group_member_attribute: str = Field("member", max_length=100)
    role_mappings: list[RoleMapping] = Field(default_factory=list)
    default_role: Role = Role.USER
    sync_interval_hours: int = Field(24, ge=0, le=24 * 30)
    use_starttls: bool = False
    tls_reject_unauthorized: bool = True
    connection_timeout_ms: int = Field(10000, ge=1000, le=120000)

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        if not v.startswith(("ldap://", "ldaps://")):
            raise ValueError("server_url must start with ldap:// or ldaps://")
        return v.strip()

    @field_validator("default_role")
    @classmethod
    def validate_default_role(cls, v: Role) -> Role:
        if v not in DIRECTORY_ASSIGNABLE_ROLES:
            raise ValueError("default_role must be user or company_admin")
        return v


class DirectoryConfigCreate(DirectoryConfigBase):
    company_id: UUID
    bind_password: str = Field(min_length=1, max_length=500)


class DirectoryConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their value. group_search_base and
    group_filter are cleared by an explicit null."""

    server_url: Optional[str] = Field(None, max_length=500)
    bind_dn: Optional[str] = Field(None, max_length=500)
    bind_password: Optional[str] = Field(None, max_length=500)
    search_base: Optional[str] = Field(None, max_length=500)
    user_filter: Optional[str] = Field(None, max_length=500)
    username_attribute: Optional[str] = Field(None, max_length=100)
    email_attribute: Optional[str] = Field(None, max_length=100)
    name_attribute: Optional[str] = Field(None, max_length=100)
    group_search_base: Optional[str] = Field(None, max_length=500)
    group_filter: Optional[str] = Field(None, max_length=500)
    group_member_attribute: Optional[str] = Field(None, max_length=100)
    role_mappings: Optional[list[RoleMapping]] = None
    default_role: Optional[Role] = None
    sync_interval_hours: Optional[int] = Field(None, ge=0, le=24 * 30)
    use_starttls: Optional[bool] = None
    tls_reject_unauthorized: Optional[bool] = None
    connection_timeout_ms: Optional[int] = Field(None, ge=1000, le=120000)

    @field_validator("default_role")
    @classmethod
    def validate_default_role(cls, v: Optional[Role]) -> Optional[Role]:
        if v is not None and v not in DIRECTORY_ASSIGNABLE_ROLES:
            raise ValueError("default_role must be user or company_admin")
        return v


class DirectoryConfigResponse(DirectoryConfigBase):
    id: UUID
    company_id: UUID
    is_enabled: bool
    has_bind_password: bool
    last_sync_at: Optional[datetime] = None
    last_sync_status: str
    last_sync_message: Optional[str] = None
    last_sync_user_count: Optional[int] = None

    @classmethod
    def from_config(cls, config: DirectoryConfig) -> "DirectoryConfigResponse":
        return cls(
            id=config.id,
            company_id=config.company_id,
            is_enabled=config.is_enabled,
            has_bind_password=bool(config.bind_password_encrypted),
            server_url=config.server_url,
            bind_dn=config.bind_dn,
            search_base=config.search_base,
            user_filter=config.user_filter,
            username_attribute=config.username_attribute,
            email_attribute=config.email_attribute,
            name_attribute=config.name_attribute,
            group_search_base=config.group_search_base,
            group_filter=config.group_filter,
            group_member_attribute=config.group_member_attribute,
            role_mappings=list(config.role_mappings or []),
            default_role=config.default_role,
            sync_interval_hours=config.sync_interval_hours,
            use_starttls=config.use_starttls,
            tls_reject_unauthorized=config.tls_reject_unauthorized,
            connection_timeout_ms=config.connection_timeout_ms,
            last_sync_at=config.last_sync_at,
            last_sync_status=config.last_sync_status.value,
            last_sync_message=config.last_sync_message,
            last_sync_user_count=config.last_sync_user_count,
        )


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    user_count: Optional[int] = None


class SyncResultResponse(BaseModel):
    created: int
    updated: int
    disabled: int
    reactivated: int
    errors: list[str]
    total_directory_users: int


class SyncStatusResponse(BaseModel):
    is_enabled: bool
    is_scheduled: bool
    is_syncing: bool
    sync_interval_hours: int
    last_sync_at: Optional[datetime] = None
    last_sync_status: str
    last_sync_message: Optional[str] = None
    last_sync_user_count: Optional[int] = None
