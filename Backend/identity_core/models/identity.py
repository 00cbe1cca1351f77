"""
Identity federation database models.

Implements per-tenant identity source configuration:
- Directory (LDAP) connection and sync settings
- SSO provider settings (OIDC or SAML)
- Trusted devices that may skip the second factor

Bind passwords and client secrets are stored encrypted in *_encrypted columns.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from identity_core.core.database import Base
from identity_core.models.user import Role


UTC = timezone.utc


class SsoProtocol(str, enum.Enum):
    """SSO provider protocol type."""
    OIDC = "oidc"
    SAML = "saml"


class SyncStatus(str, enum.Enum):
    """Outcome of the last directory sync run."""
    NEVER = "never"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


class DirectoryConfig(Base):
    """
    LDAP directory configuration of a tenant.

    role_mappings is an ordered list of {"group_dn": ..., "role": ...} entries.
    """
    __tablename__ = "directory_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Connection
    server_url: Mapped[str] = mapped_column(String(500), nullable=False)
    bind_dn: Mapped[str] = mapped_column(String(500), nullable=False)
    bind_password_encrypted: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    use_starttls: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tls_reject_unauthorized: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    connection_timeout_ms: Mapped[int] = mapped_column(Integer, default=10000, nullable=False)

    # User search
    search_base: Mapped[str] = mapped_column(String(500), nullable=False)
    user_filter: Mapped[str] = mapped_column(
        String(500),
        default="(objectClass=inetOrgPerson)",
        nullable=False,
    )
    username_attribute: Mapped[str] = mapped_column(String(100), default="uid", nullable=False)
    email_attribute: Mapped[str] = mapped_column(String(100), default="mail", nullable=False)
    name_attribute: Mapped[str] = mapped_column(String(100), default="cn", nullable=False)

    # Group search and role mapping
    group_search_base: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    group_filter: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    group_member_attribute: Mapped[str] = mapped_column(String(100), default="member", nullable=False)
    role_mappings: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    default_role: Mapped[Role] = mapped_column(Enum(Role), default=Role.USER, nullable=False)

    # Sync
    sync_interval_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[SyncStatus] = mapped_column(
        Enum(SyncStatus),
        default=SyncStatus.NEVER,
        nullable=False,
    )
    last_sync_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_sync_user_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SsoConfig(Base):
    """SSO identity provider configuration of a tenant."""
    __tablename__ = "sso_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    protocol: Mapped[SsoProtocol] = mapped_column(Enum(SsoProtocol), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), default="SSO Login", nullable=False)

    # OIDC
    oidc_issuer_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    oidc_client_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    oidc_client_secret_encrypted: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    oidc_scopes: Mapped[str] = mapped_column(String(255), default="openid email profile", nullable=False)

    # SAML
    saml_entry_point: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    saml_issuer: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    saml_cert: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    saml_callback_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Provisioning
    auto_create_users: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    default_role: Mapped[Role] = mapped_column(Enum(Role), default=Role.USER, nullable=False)
    email_domains: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class TrustedDevice(Base):
    """A device allowed to skip the second factor until expires_at."""
    __tablename__ = "trusted_devices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    device_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    def is_valid_for(self, user_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """A device token only bypasses 2FA for its owner and before expiry."""
        now = now or datetime.now(UTC)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return self.user_id == user_id and now < expires_at
