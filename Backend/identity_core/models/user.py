"""
User database model.

The users table is shared with the rest of the booking platform. This core
reads and writes the identity, credential-source and TOTP columns only.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from identity_core.core.database import Base


UTC = timezone.utc


class Role(str, enum.Enum):
    """Platform role of a user."""
    USER = "user"
    COMPANY_ADMIN = "company_admin"
    PARK_ADMIN = "park_admin"
    SUPER_ADMIN = "super_admin"


# Roles a directory sync or SSO provisioning may assign; platform roles never are
DIRECTORY_ASSIGNABLE_ROLES = frozenset({Role.USER, Role.COMPANY_ADMIN})

ROLE_PRIORITY = {
    Role.USER: 1,
    Role.COMPANY_ADMIN: 2,
}


class AuthSource(str, enum.Enum):
    """Authoritative credential source of a user."""
    LOCAL = "local"
    DIRECTORY = "directory"
    OIDC = "oidc"
    SAML = "saml"


class User(Base):
    """Platform user account."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    password_hash: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    role: Mapped[Role] = mapped_column(
        Enum(Role),
        default=Role.USER,
        nullable=False,
    )

    auth_source: Mapped[AuthSource] = mapped_column(
        Enum(AuthSource),
        default=AuthSource.LOCAL,
        nullable=False,
    )

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    park_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    directory_dn: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
    )

    sso_subject_id: Mapped[Optional[str]] = mapped_column(
        String(512),
        nullable=True,
    )

    sso_provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    twofa_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    twofa_secret: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    twofa_backup_codes: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
    )

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

    __table_args__ = (
        Index("ix_users_company_directory_dn", "company_id", "directory_dn"),
        Index("ix_users_sso_identity", "sso_provider_id", "sso_subject_id"),
    )

    def to_dict(self) -> dict:
        """Public representation. Credentials and TOTP material are never included."""
        return {
            "id": str(self.id),
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "auth_source": self.auth_source.value,
            "company_id": str(self.company_id) if self.company_id else None,
            "park_id": str(self.park_id) if self.park_id else None,
            "is_active": self.is_active,
            "twofa_enabled": self.twofa_enabled,
        }
