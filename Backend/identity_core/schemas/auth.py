"""
Authentication-related schemas for request/response validation.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


# ============================================================================
# Request Schemas
# ============================================================================


class LoginRequest(BaseModel):
    """Login request schema."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)
    device_token: Optional[str] = Field(None, max_length=128)
    keep_logged_in: bool = False


class TwoFaCodeRequest(BaseModel):
    """A TOTP or backup code."""

    code: str = Field(min_length=6, max_length=16)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        """Normalize verification code."""
        return v.strip().replace(" ", "").lower()


class TwoFaVerifyRequest(TwoFaCodeRequest):
    """Second-factor verification request."""

    trust_device: bool = False


class TwoFaDisableRequest(BaseModel):
    password: str = Field(min_length=1, max_length=255)


# ============================================================================
# Response Schemas
# ============================================================================


class UserResponse(BaseModel):
    """User response schema."""

    id: str
    email: str
    name: str
    role: str
    auth_source: str
    company_id: Optional[str] = None
    park_id: Optional[str] = None
    is_active: bool
    twofa_enabled: bool

    @classmethod
    def from_user(cls, user) -> "UserResponse":
        """Create UserResponse from User model."""
        return cls(**user.to_dict())


class LoginResponse(BaseModel):
    """
    Login response schema.

    Either a full session (token + user) or a partial token with
    requires_twofa set.
    """

    token: str
    user: Optional[UserResponse] = None
    requires_twofa: bool = False
    twofa_pending: bool = False
    twofa_setup_required: Optional[bool] = None


class TwoFaSetupResponse(BaseModel):
    secret: str
    qr_code_url: str
    otpauth_url: str


class TwoFaConfirmResponse(BaseModel):
    backup_codes: list[str]
    token: Optional[str] = None


class TwoFaVerifyResponse(BaseModel):
    token: str
    user: UserResponse
    device_token: Optional[str] = None


class TwoFaStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int
    enforcement: str
    trusted_device_mode: bool


class TrustedDeviceResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_device(cls, device) -> "TrustedDeviceResponse":
        return cls(
            id=str(device.id),
            device_name=device.device_name,
            ip_address=device.ip_address,
            expires_at=device.expires_at,
            last_used_at=device.last_used_at,
            created_at=device.created_at,
        )


class MessageResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    version: str
    database: Optional[str] = None
    redis: Optional[str] = None
