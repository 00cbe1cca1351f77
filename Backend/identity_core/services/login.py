"""
Login service - the login state machine and 2FA flows.

A login moves Unauthenticated -> CredentialsVerified -> PartialSession or
FullSession. Credentials are checked by exactly one path, chosen by the
user's auth_source. SSO logins enter at CredentialsVerified through
complete_primary_authentication.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

import structlog

from identity_core.core.exceptions import (
    AccountDisabledError,
    DirectoryUnreachableError,
    IdentityError,
    InvalidCredentialsError,
    InvalidVerificationCodeError,
    NotFoundError,
)
from identity_core.core.security import InputSanitizer, PasswordHasher
from identity_core.core.tokens import TokenIssuer
from identity_core.models.identity import TrustedDevice
from identity_core.models.tenancy import Enforcement, TwoFaMode
from identity_core.models.user import AuthSource, User
from identity_core.repositories.base import TenantSettingsReader, UserRepository
from identity_core.services.directory.client import BindOutcome, NotFound, Unreachable, Verified, WrongPassword
from identity_core.services.enforcement import EnforcementResolver
from identity_core.services.twofa import BackupCodeManager, TotpService, TrustedDeviceStore

logger = structlog.get_logger(__name__)


class LoginState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_VERIFIED = "credentials_verified"
    PARTIAL_SESSION = "partial_session"
    FULL_SESSION = "full_session"


@dataclass
class LoginOutcome:
    state: LoginState
    token: str
    user: User
    twofa_setup_required: bool = False

    @property
    def requires_twofa(self) -> bool:
        return self.state is LoginState.PARTIAL_SESSION


@dataclass
class VerifyOutcome:
    token: str
    user: User
    device_token: Optional[str] = None


@dataclass
class TwoFaSetup:
    secret: str
    qr_code_url: str
    otpauth_url: str


@dataclass
class SetupConfirmation:
    backup_codes: list[str] = field(default_factory=list)
    token: Optional[str] = None


@dataclass
class TwoFaStatus:
    enabled: bool
    backup_codes_remaining: int
    enforcement: Enforcement
    trusted_device_mode: bool


class DirectoryAuthenticator(Protocol):
    async def authenticate_user(
        self, email: str, password: str, tenant_id: Optional[uuid.UUID]
    ) -> BindOutcome: ...


class LoginService:
    """
    Login state machine.

    This service contains business logic for:
    - Password login over local and directory credentials
    - Deciding between partial and full sessions
    - TOTP setup, confirmation, verification and disabling
    - Trusted device bypass
    """

    def __init__(
        self,
        users: UserRepository,
        directory: DirectoryAuthenticator,
        enforcement: EnforcementResolver,
        tenants: TenantSettingsReader,
        devices: TrustedDeviceStore,
        tokens: TokenIssuer,
        hasher: Optional[PasswordHasher] = None,
        totp: Optional[TotpService] = None,
        backup_codes: Optional[BackupCodeManager] = None,
    ):
        self.users = users
        self.directory = directory
        self.enforcement = enforcement
        self.tenants = tenants
        self.devices = devices
        self.tokens = tokens
        self.hasher = hasher or PasswordHasher()
        self.totp = totp or TotpService()
        self.backup_codes = backup_codes or BackupCodeManager()

    # ========================================================================
    # Primary authentication
    # ========================================================================

    async def login(
        self,
        email: str,
        password: str,
        device_token: Optional[str] = None,
        keep_logged_in: bool = False,
    ) -> LoginOutcome:
        """
        Authenticate with email and password.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountDisabledError: The account is deactivated
            DirectoryUnreachableError: The tenant's directory cannot be reached
        """
        user = await self.users.find_by_email(InputSanitizer.sanitize_email(email))
        if user is None:
            raise InvalidCredentialsError()
        if not user.is_active:
            raise AccountDisabledError()

        await self.verify_credentials(user, password)
        return await self.complete_primary_authentication(user, device_token, keep_logged_in)

    async def verify_credentials(self, user: User, password: str) -> None:
        """Check a password along the user's authoritative credential source."""
        if user.auth_source is AuthSource.LOCAL:
            if not self.hasher.verify(password, user.password_hash):
                raise InvalidCredentialsError()
            return

        if user.auth_source is AuthSource.DIRECTORY:
            outcome = await self.directory.authenticate_user(user.email, password, user.company_id)
            await self._apply_directory_outcome(user, outcome)
            return

        # SSO accounts have no password this service can check
        raise InvalidCredentialsError()

    async def _apply_directory_outcome(self, user: User, outcome: BindOutcome) -> None:
        if isinstance(outcome, Verified):
            if outcome.identity.dn != user.directory_dn:
                user.directory_dn = outcome.identity.dn
                await self.users.save(user)
            return
        if isinstance(outcome, Unreachable):
            raise DirectoryUnreachableError()
        if isinstance(outcome, (NotFound, WrongPassword)):
            logger.info(
                "Directory password rejected",
                user_id=str(user.id),
                outcome=type(outcome).__name__,
            )
            raise InvalidCredentialsError()
        raise IdentityError(f"Unexpected directory outcome: {outcome!r}")

    async def complete_primary_authentication(
        self,
        user: User,
        device_token: Optional[str] = None,
        keep_logged_in: bool = False,
    ) -> LoginOutcome:
        """Decide between a partial and a full session for verified credentials."""
        if not user.is_active:
            raise AccountDisabledError()

        if user.twofa_enabled:
            defaults = await self.tenants.get_platform_defaults()
            if defaults.twofa_mode is TwoFaMode.TRUSTED_DEVICE and await self.devices.check(device_token, user.id):
                logger.info("Trusted device accepted", user_id=str(user.id))
                return self._full(user, keep_logged_in)
            return LoginOutcome(
                state=LoginState.PARTIAL_SESSION,
                token=self.tokens.issue_partial(user, keep_logged_in=keep_logged_in),
                user=user,
            )

        enforcement = await self.enforcement.resolve(user.park_id, user.company_id)
        if enforcement is Enforcement.REQUIRED:
            return LoginOutcome(
                state=LoginState.PARTIAL_SESSION,
                token=self.tokens.issue_partial(user, setup_required=True, keep_logged_in=keep_logged_in),
                user=user,
                twofa_setup_required=True,
            )

        return self._full(user, keep_logged_in)

    def _full(self, user: User, keep_logged_in: bool) -> LoginOutcome:
        return LoginOutcome(
            state=LoginState.FULL_SESSION,
            token=self.tokens.issue_full(user, keep_logged_in=keep_logged_in),
            user=user,
        )

    async def _get_user(self, user_id: uuid.UUID) -> User:
        user = await self.users.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.is_active:
            raise AccountDisabledError()
        return user

    # ========================================================================
    # Second factor
    # ========================================================================

    async def verify_second_factor(
        self,
        user_id: uuid.UUID,
        code: str,
        trust_device: bool = False,
        device_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        keep_logged_in: bool = False,
    ) -> VerifyOutcome:
        """
        Exchange a TOTP or backup code for a full session.

        A failed attempt changes nothing.
        """
        user = await self._get_user(user_id)
        if not user.twofa_enabled or not user.twofa_secret:
            raise InvalidVerificationCodeError()

        if not self.totp.verify(user.twofa_secret, code):
            remaining = self.backup_codes.consume(user.twofa_backup_codes, code)
            if remaining is None:
                raise InvalidVerificationCodeError()
            user.twofa_backup_codes = remaining
            await self.users.save(user)
            logger.info("Backup code used", user_id=str(user.id), remaining=len(remaining))

        device_token = None
        if trust_device:
            defaults = await self.tenants.get_platform_defaults()
            if defaults.twofa_mode is TwoFaMode.TRUSTED_DEVICE:
                device = await self.devices.create(
                    user.id,
                    days=defaults.trusted_device_days,
                    device_name=InputSanitizer.sanitize_device_name(device_name),
                    ip_address=ip_address,
                )
                device_token = device.token

        return VerifyOutcome(
            token=self.tokens.issue_full(user, keep_logged_in=keep_logged_in),
            user=user,
            device_token=device_token,
        )

    # ========================================================================
    # Setup and disable
    # ========================================================================

    async def begin_setup(self, user_id: uuid.UUID) -> TwoFaSetup:
        """Store a fresh, not yet enabled secret and return its provisioning data."""
        user = await self._get_user(user_id)
        if user.twofa_enabled:
            raise IdentityError("Two-factor authentication is already enabled")

        secret = self.totp.generate_secret()
        user.twofa_secret = secret
        await self.users.save(user)

        otpauth_url = self.totp.provisioning_uri(secret, user.email)
        return TwoFaSetup(
            secret=secret,
            qr_code_url=self.totp.qr_code_data_url(otpauth_url),
            otpauth_url=otpauth_url,
        )

    async def confirm_setup(
        self,
        user_id: uuid.UUID,
        code: str,
        from_partial_session: bool = False,
        keep_logged_in: bool = False,
    ) -> SetupConfirmation:
        """
        Enable 2FA once the user proves possession of the pending secret.

        Returns the plaintext backup codes (shown once) and, when the caller
        held a partial token, a full session token.
        """
        user = await self._get_user(user_id)
        if user.twofa_enabled:
            raise IdentityError("Two-factor authentication is already enabled")
        if not user.twofa_secret:
            raise IdentityError("Two-factor setup has not been started")
        if not self.totp.verify(user.twofa_secret, code):
            raise InvalidVerificationCodeError()

        codes, hashes = self.backup_codes.generate()
        user.twofa_backup_codes = hashes
        user.twofa_enabled = True
        await self.users.save(user)
        logger.info("Two-factor authentication enabled", user_id=str(user.id))

        token = self.tokens.issue_full(user, keep_logged_in=keep_logged_in) if from_partial_session else None
        return SetupConfirmation(backup_codes=codes, token=token)

    async def disable(self, user_id: uuid.UUID, password: str) -> None:
        """Turn 2FA off and revoke every trusted device of the user."""
        user = await self._get_user(user_id)
        await self.verify_credentials(user, password)

        user.twofa_enabled = False
        user.twofa_secret = None
        user.twofa_backup_codes = None
        await self.users.save(user)
        await self.devices.revoke_all(user.id)
        logger.info("Two-factor authentication disabled", user_id=str(user.id))

    async def status(self, user_id: uuid.UUID) -> TwoFaStatus:
        user = await self._get_user(user_id)
        enforcement = await self.enforcement.resolve(user.park_id, user.company_id)
        defaults = await self.tenants.get_platform_defaults()
        return TwoFaStatus(
            enabled=user.twofa_enabled,
            backup_codes_remaining=len(user.twofa_backup_codes or []),
            enforcement=enforcement,
            trusted_device_mode=defaults.twofa_mode is TwoFaMode.TRUSTED_DEVICE,
        )

    # ========================================================================
    # Trusted devices
    # ========================================================================

    async def list_devices(self, user_id: uuid.UUID) -> list[TrustedDevice]:
        return await self.devices.list_for_user(user_id)

    async def revoke_device(self, user_id: uuid.UUID, device_id: uuid.UUID) -> None:
        await self.devices.revoke(user_id, device_id)
