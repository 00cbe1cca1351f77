"""
Identity error taxonomy.

Every error carries a stable code and an HTTP status so the API layer can
render it without knowing which component raised it. Messages of credential
and verification failures are deliberately generic.
"""

from typing import Optional


class IdentityError(Exception):
    """Base exception for identity core errors."""

    code = "IDENTITY_ERROR"
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentialsError(IdentityError):
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class AccountDisabledError(IdentityError):
    code = "ACCOUNT_DISABLED"
    status_code = 403
    default_message = "Account is disabled"


class TwoFaPendingError(IdentityError):
    """A partial token was presented to an endpoint that needs a full session."""

    code = "TWOFA_PENDING"
    status_code = 403
    default_message = "Two-factor verification required"


class InvalidVerificationCodeError(IdentityError):
    code = "INVALID_VERIFICATION_CODE"
    status_code = 401
    default_message = "Invalid verification code"


class InvalidOrExpiredCorrelationStateError(IdentityError):
    code = "INVALID_STATE"
    status_code = 400
    default_message = "Invalid or expired SSO state"


class DirectoryUnreachableError(IdentityError):
    """Directory server could not be reached, bound or searched in time."""

    code = "AUTHENTICATION_UNAVAILABLE"
    status_code = 503
    default_message = "Authentication service unavailable"


class DirectoryConfigIncompleteError(IdentityError):
    code = "DIRECTORY_CONFIG_INCOMPLETE"
    status_code = 400
    default_message = "Directory configuration is missing or disabled"


class EmailDomainNotAllowedError(IdentityError):
    code = "EMAIL_DOMAIN_NOT_ALLOWED"
    status_code = 403
    default_message = "Email domain is not allowed"


class DuplicateConfigForTenantError(IdentityError):
    code = "DUPLICATE_CONFIG"
    status_code = 409
    default_message = "Configuration already exists for this company"


class CrossTenantEmailCollisionError(IdentityError):
    code = "CROSS_TENANT_EMAIL"
    status_code = 409
    default_message = "Email is already associated with a different company"


class AutoProvisioningDisabledError(IdentityError):
    code = "AUTO_PROVISIONING_DISABLED"
    status_code = 403
    default_message = "User not found. Auto-creation is disabled for this SSO configuration"


class NotFoundError(IdentityError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class PermissionDeniedError(IdentityError):
    code = "PERMISSION_DENIED"
    status_code = 403
    default_message = "Insufficient permissions"


class NotAuthenticatedError(IdentityError):
    code = "NOT_AUTHENTICATED"
    status_code = 401
    default_message = "Not authenticated"


class SyncAlreadyRunningError(IdentityError):
    code = "SYNC_IN_PROGRESS"
    status_code = 409
    default_message = "A directory sync is already running for this company"


class SsoConfigError(IdentityError):
    """SSO configuration is invalid or incomplete."""

    code = "SSO_CONFIG_ERROR"
    status_code = 400
    default_message = "SSO configuration is invalid"


class SsoAuthError(IdentityError):
    """The identity provider response could not be accepted."""

    code = "SSO_AUTH_FAILED"
    status_code = 401
    default_message = "SSO authentication failed"
