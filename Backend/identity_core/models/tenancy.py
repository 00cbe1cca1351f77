"""
Tenant hierarchy models read by the identity core.

Parks contain companies; companies are the tenants that own directory and
SSO configurations. Each level carries its own 2FA enforcement setting and the
platform keeps one row of system-wide defaults.
"""

import enum
import uuid
from typing import Optional

from sqlalchemy import Enum, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from identity_core.core.database import Base


class Enforcement(str, enum.Enum):
    """System-wide 2FA enforcement, also the resolved effective requirement."""
    REQUIRED = "required"
    OPTIONAL = "optional"
    DISABLED = "disabled"


class LevelEnforcement(str, enum.Enum):
    """Park or company level 2FA enforcement."""
    INHERIT = "inherit"
    OPTIONAL = "optional"
    REQUIRED = "required"


class TwoFaMode(str, enum.Enum):
    """Whether a trusted device may skip the second factor."""
    EVERY_LOGIN = "every_login"
    TRUSTED_DEVICE = "trusted_device"


PLATFORM_SETTINGS_ID = "global"


class Park(Base):
    __tablename__ = "parks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    twofa_enforcement: Mapped[LevelEnforcement] = mapped_column(
        Enum(LevelEnforcement),
        default=LevelEnforcement.INHERIT,
        nullable=False,
    )


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    park_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("parks.id", ondelete="SET NULL"),
        nullable=True,
    )
    twofa_enforcement: Mapped[LevelEnforcement] = mapped_column(
        Enum(LevelEnforcement),
        default=LevelEnforcement.INHERIT,
        nullable=False,
    )


class PlatformSettings(Base):
    """Single row of platform-wide security defaults."""
    __tablename__ = "platform_settings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=PLATFORM_SETTINGS_ID)
    twofa_enforcement: Mapped[Enforcement] = mapped_column(
        Enum(Enforcement),
        default=Enforcement.DISABLED,
        nullable=False,
    )
    twofa_mode: Mapped[TwoFaMode] = mapped_column(
        Enum(TwoFaMode),
        default=TwoFaMode.TRUSTED_DEVICE,
        nullable=False,
    )
    twofa_trusted_device_days: Mapped[int] = mapped_column(
        Integer,
        default=30,
        nullable=False,
    )
