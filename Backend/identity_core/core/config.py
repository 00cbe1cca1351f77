"""
Configuration management using Pydantic Settings.

All configuration values are loaded from environment variables
with sensible defaults where appropriate.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Backend dir is: /path/to/repo/Backend/
ROOT_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = ROOT_DIR / ".env"

# Load .env into environment for nested settings models
from dotenv import load_dotenv
load_dotenv(ENV_FILE)

DEV_SECRET_KEY = "dev-secret-key-change-in-production-0123456789"
DEV_MASTER_KEY = "dev-master-key-change-in-production-32chars"


class AppSettings(BaseSettings):
    """Application-level configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production", "test"] = "development"
    app_name: str = "booking-identity"
    app_version: str = "1.0.0"
    app_debug: bool = False

    # Frontend (SSO callbacks redirect here)
    frontend_base_url: str = "http://localhost:3000"

    # Public URL of this API, used for SSO callback and SAML ACS URLs
    api_base_url: str = "http://localhost:8000"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 1

    # CORS
    cors_origins: str = "http://localhost:3000,http://localhost:5173"
    cors_credentials: bool = True

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="DB_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 5432
    name: str = "booking_db"
    user: str = "booking_user"
    password: str = ""
    pool_size: int = 10
    max_overflow: int = 10
    create_tables: bool = False

    # Full DSN override (e.g. sqlite+aiosqlite:///./dev.db)
    url: str = ""

    @property
    def dsn(self) -> str:
        """Get async database DSN."""
        if self.url:
            return self.url
        auth_part = f"{self.user}:{self.password}@" if self.password else f"{self.user}@"
        return f"postgresql+asyncpg://{auth_part}{self.host}:{self.port}/{self.name}"


class RedisSettings(BaseSettings):
    """Redis configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="REDIS_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0
    pool_size: int = 20
    state_prefix: str = "sso_state:"


class SecuritySettings(BaseSettings):
    """Security configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    secret_key: str = ""
    password_hash_rounds: int = Field(default=12, ge=4, le=31)
    backup_code_hash_rounds: int = Field(default=10, ge=4, le=31)

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate secret key is set in production."""
        if os.getenv("APP_ENV") == "production" and len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long in production")
        return v or DEV_SECRET_KEY


class TokenSettings(BaseSettings):
    """Bearer token configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="TOKEN_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    issuer: str = "booking-identity"
    ttl: int = 86400  # 1 day
    remember_ttl: int = 2592000  # 30 days
    partial_ttl: int = 300  # 5 minutes


class TwoFaSettings(BaseSettings):
    """Two-factor authentication configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="TWOFA_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    issuer_name: str = "Open Booking"
    valid_window: int = Field(default=1, ge=0, le=3)
    backup_code_count: int = 10
    default_trusted_device_days: int = 30


class DirectorySettings(BaseSettings):
    """LDAP directory sync configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="DIRECTORY_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    scheduler_enabled: bool = True
    refresh_interval_seconds: int = 300  # 5 minutes


class SsoSettings(BaseSettings):
    """SSO configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="SSO_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    state_ttl_seconds: int = 600  # 10 minutes
    state_gc_interval_seconds: int = 300  # 5 minutes
    http_timeout: float = 30.0
    saml_clock_skew_seconds: int = 180
    sp_entity_id: str = ""


class CredentialSettings(BaseSettings):
    """Credential encryption configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="CREDENTIAL_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    master_key: str = ""
    previous_master_key: str = ""

    @field_validator("master_key")
    @classmethod
    def validate_master_key(cls, v: str) -> str:
        """Validate master key is set in production."""
        if os.getenv("APP_ENV") == "production" and len(v) < 32:
            raise ValueError("CREDENTIAL_MASTER_KEY must be at least 32 characters long in production")
        return v or DEV_MASTER_KEY


class LogSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="LOG_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    requests: bool = True


class Settings(BaseSettings):
    """Main settings class that aggregates all configuration sections."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    token: TokenSettings = Field(default_factory=TokenSettings)
    twofa: TwoFaSettings = Field(default_factory=TwoFaSettings)
    directory: DirectorySettings = Field(default_factory=DirectorySettings)
    sso: SsoSettings = Field(default_factory=SsoSettings)
    credential: CredentialSettings = Field(default_factory=CredentialSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    # DOCS
    docs_enabled: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
