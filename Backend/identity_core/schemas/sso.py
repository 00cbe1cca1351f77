"""
SSO configuration and discovery schemas.

The OIDC client secret is write-only; responses carry has_client_secret.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from identity_core.models.identity import SsoConfig, SsoProtocol
from identity_core.models.user import DIRECTORY_ASSIGNABLE_ROLES, Role


def _normalize_domains(domains: Optional[list[str]]) -> Optional[list[str]]:
    if domains is None:
        return None
    cleaned = []
    for domain in domains:
        domain = domain.strip().lower().lstrip("@")
        if domain and domain not in cleaned:
            cleaned.append(domain)
    return cleaned


class SsoConfigBase(BaseModel):
    protocol: SsoProtocol
    display_name: str = Field("SSO Login", min_length=1, max_length=100)

    oidc_issuer_url: Optional[str] = Field(None, max_length=500)
    oidc_client_id: Optional[str] = Field(None, max_length=255)
    oidc_scopes: str = Field("openid email profile", max_length=255)

    saml_entry_point: Optional[str] = Field(None, max_length=500)
    saml_issuer: Optional[str] = Field(None, max_length=500)
    saml_cert: Optional[str] = None
    saml_callback_url: Optional[str] = Field(None, max_length=500)

    auto_create_users: bool = True
    default_role: Role = Role.USER
    email_domains: list[str] = Field(default_factory=list)

    @field_validator("default_role")
    @classmethod
    def validate_default_role(cls, v: Role) -> Role:
        if v not in DIRECTORY_ASSIGNABLE_ROLES:
            raise ValueError("default_role must be user or company_admin")
        return v

    @field_validator("email_domains")
    @classmethod
    def validate_email_domains(cls, v: list[str]) -> list[str]:
        return _normalize_domains(v)


class SsoConfigCreate(SsoConfigBase):
    company_id: UUID
    oidc_client_secret: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def validate_protocol_fields(self) -> "SsoConfigCreate":
        if self.protocol is SsoProtocol.OIDC and not (self.oidc_issuer_url and self.oidc_client_id):
            raise ValueError("OIDC configuration requires oidc_issuer_url and oidc_client_id")
        if self.protocol is SsoProtocol.SAML and not (self.saml_entry_point and self.saml_cert):
            raise ValueError("SAML configuration requires saml_entry_point and saml_cert")
        return self


class SsoConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their value. saml_issuer and
    saml_callback_url are cleared by an explicit null."""

    is_enabled: Optional[bool] = None
    protocol: Optional[SsoProtocol] = None
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    oidc_issuer_url: Optional[str] = Field(None, max_length=500)
    oidc_client_id: Optional[str] = Field(None, max_length=255)
    oidc_client_secret: Optional[str] = Field(None, max_length=500)
    oidc_scopes: Optional[str] = Field(None, max_length=255)
    saml_entry_point: Optional[str] = Field(None, max_length=500)
    saml_issuer: Optional[str] = Field(None, max_length=500)
    saml_cert: Optional[str] = None
    saml_callback_url: Optional[str] = Field(None, max_length=500)
    auto_create_users: Optional[bool] = None
    default_role: Optional[Role] = None
    email_domains: Optional[list[str]] = None

    @field_validator("default_role")
    @classmethod
    def validate_default_role(cls, v: Optional[Role]) -> Optional[Role]:
        if v is not None and v not in DIRECTORY_ASSIGNABLE_ROLES:
            raise ValueError("default_role must be user or company_admin")
        return v

    @field_validator("email_domains")
    @classmethod
    def validate_email_domains(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        return _normalize_domains(v)


class SsoConfigResponse(SsoConfigBase):
    id: UUID
    company_id: UUID
    is_enabled: bool
    has_client_secret: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, config: SsoConfig) -> "SsoConfigResponse":
        return cls(
            id=config.id,
            company_id=config.company_id,
            is_enabled=config.is_enabled,
            protocol=config.protocol,
            display_name=config.display_name,
            oidc_issuer_url=config.oidc_issuer_url,
            oidc_client_id=config.oidc_client_id,
            oidc_scopes=config.oidc_scopes,
            has_client_secret=bool(config.oidc_client_secret_encrypted),
            saml_entry_point=config.saml_entry_point,
            saml_issuer=config.saml_issuer,
            saml_cert=config.saml_cert,
            saml_callback_url=config.saml_callback_url,
            auto_create_users=config.auto_create_users,
            default_role=config.default_role,
            email_domains=list(config.email_domains or []),
            created_at=config.created_at,
            updated_at=config.updated_at,
        )


class SsoDiscoverResponse(BaseModel):
    has_sso: bool
    config_id: Optional[UUID] = None
    protocol: Optional[SsoProtocol] = None
    display_name: Optional[str] = None
