"""
SSO federation service.

Drives SP-initiated OIDC and SAML logins for tenants with an SSO
configuration and maps the asserted identity onto a local user
(just-in-time provisioning).

Security considerations:
- Correlation state is single use and expires after ten minutes
- Nonce and PKCE for OIDC
- Signature validation against the configured IdP certificate for SAML
- An email never links across companies
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import httpx
import structlog

from identity_core.core.config import settings
from identity_core.core.encryption import DecryptionError, SecretVault
from identity_core.core.exceptions import (
    AutoProvisioningDisabledError,
    CrossTenantEmailCollisionError,
    EmailDomainNotAllowedError,
    InvalidOrExpiredCorrelationStateError,
    NotFoundError,
    SsoAuthError,
    SsoConfigError,
)
from identity_core.core.kv_store import KeyValueStore
from identity_core.core.security import InputSanitizer, TokenGenerator
from identity_core.models.identity import SsoConfig, SsoProtocol
from identity_core.models.user import DIRECTORY_ASSIGNABLE_ROLES, AuthSource, Role, User
from identity_core.repositories.base import SsoConfigRepository, TenantSettingsReader, UserRepository
from identity_core.services.sso import saml
from identity_core.services.sso.oidc import OidcClient, generate_pkce_pair


logger = structlog.get_logger(__name__)

UTC = timezone.utc


# ===========================================
# Results
# ===========================================

@dataclass
class SsoIdentity:
    """Normalized identity asserted by the provider."""

    config_id: uuid.UUID
    protocol: SsoProtocol
    subject_id: str
    email: str
    name: str


@dataclass
class DiscoverResult:
    has_sso: bool
    config_id: Optional[uuid.UUID] = None
    protocol: Optional[SsoProtocol] = None
    display_name: Optional[str] = None


def get_oidc_callback_url() -> str:
    return f"{settings.app.api_base_url.rstrip('/')}/api/v1/sso/callback/oidc"


def get_acs_url(config: SsoConfig) -> str:
    if config.saml_callback_url:
        return config.saml_callback_url
    return f"{settings.app.api_base_url.rstrip('/')}/api/v1/sso/callback/saml"


def get_sp_entity_id(config: SsoConfig) -> str:
    if settings.sso.sp_entity_id:
        return settings.sso.sp_entity_id
    return f"{settings.app.api_base_url.rstrip('/')}/api/v1/sso/metadata/{config.id}"


def domain_allowed(email: str, email_domains: Optional[list]) -> bool:
    """An empty domain list accepts every email."""
    if not email_domains:
        return True
    domain = InputSanitizer.email_domain(email)
    return domain in {d.strip().lower() for d in email_domains if d}


# ===========================================
# SSO Federation Service
# ===========================================

class SsoFederationService:

    def __init__(
        self,
        configs: SsoConfigRepository,
        users: UserRepository,
        tenants: TenantSettingsReader,
        state_store: KeyValueStore,
        vault: SecretVault,
        http_client: httpx.AsyncClient,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.configs = configs
        self.users = users
        self.tenants = tenants
        self.state_store = state_store
        self.vault = vault
        self.oidc = OidcClient(http_client)
        self.clock = clock

    async def _get_enabled_config(self, config_id: uuid.UUID) -> SsoConfig:
        config = await self.configs.get(config_id)
        if config is None:
            raise NotFoundError("SSO configuration not found")
        if not config.is_enabled:
            raise SsoConfigError("SSO is not enabled for this company")
        return config

    def _client_secret(self, config: SsoConfig) -> Optional[str]:
        if not config.oidc_client_secret_encrypted:
            return None
        try:
            return self.vault.decrypt(config.oidc_client_secret_encrypted)
        except DecryptionError:
            logger.error("OIDC client secret could not be decrypted", config_id=str(config.id))
            raise SsoConfigError("OIDC client secret could not be decrypted")

    # ========================================================================
    # Correlation state
    # ========================================================================

    async def _put_state(self, config: SsoConfig, state: Optional[str] = None, **extra: Any) -> str:
        state = state or TokenGenerator.generate_state()
        value = {
            "config_id": str(config.id),
            "protocol": config.protocol.value,
            "created_at": self.clock().isoformat(),
            **extra,
        }
        await self.state_store.put(state, value, ttl=settings.sso.state_ttl_seconds)
        return state

    async def _take_state(self, state: Optional[str], protocol: SsoProtocol) -> dict:
        if not state:
            raise InvalidOrExpiredCorrelationStateError()
        value = await self.state_store.take_once(state)
        if value is None or value.get("protocol") != protocol.value:
            raise InvalidOrExpiredCorrelationStateError()
        return value

    # ========================================================================
    # Outbound
    # ========================================================================

    async def build_authorization_url(self, config_id: uuid.UUID) -> str:
        """Return the provider URL the browser is redirected to."""
        config = await self._get_enabled_config(config_id)

        if config.protocol is SsoProtocol.OIDC:
            discovery = await self.oidc.get_discovery_document(config.oidc_issuer_url)
            nonce = TokenGenerator.generate_nonce()
            code_verifier, code_challenge = generate_pkce_pair()
            redirect_uri = get_oidc_callback_url()
            state = await self._put_state(
                config,
                nonce=nonce,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
            )
            return self.oidc.authorization_url(
                discovery,
                client_id=config.oidc_client_id,
                redirect_uri=redirect_uri,
                scopes=config.oidc_scopes or "openid email profile",
                state=state,
                nonce=nonce,
                code_challenge=code_challenge,
            )

        # The request id is only known once the AuthnRequest is built
        state = TokenGenerator.generate_state()
        url, request_id = saml.build_authn_request(
            config.saml_entry_point,
            sp_entity_id=get_sp_entity_id(config),
            acs_url=get_acs_url(config),
            relay_state=state,
            now=self.clock(),
        )
        await self._put_state(config, state, request_id=request_id)
        return url

    # ========================================================================
    # Callbacks
    # ========================================================================

    async def handle_oidc_callback(self, params: Mapping[str, Any], state: Optional[str]) -> SsoIdentity:
        """
        Validate an OIDC authorization response.

        Raises:
            InvalidOrExpiredCorrelationStateError: Unknown, reused or expired state
            SsoAuthError: The provider reported an error or the tokens are invalid
        """
        stored = await self._take_state(state, SsoProtocol.OIDC)

        error = params.get("error")
        if error:
            raise SsoAuthError(f"OIDC error: {error} - {params.get('error_description') or 'No description'}")
        code = params.get("code")
        if not code:
            raise SsoAuthError("Authorization code not provided")

        config = await self._get_enabled_config(uuid.UUID(stored["config_id"]))
        if not config.oidc_client_id:
            raise SsoConfigError("OIDC client_id not configured")
        client_secret = self._client_secret(config)
        discovery = await self.oidc.get_discovery_document(config.oidc_issuer_url)

        tokens = await self.oidc.exchange_code(
            discovery,
            client_id=config.oidc_client_id,
            client_secret=client_secret,
            code=code,
            redirect_uri=stored.get("redirect_uri") or get_oidc_callback_url(),
            code_verifier=stored.get("code_verifier"),
        )

        claims: dict[str, Any] = {}
        if tokens.get("id_token"):
            claims = await self.oidc.validate_id_token(
                discovery,
                tokens["id_token"],
                client_id=config.oidc_client_id,
                client_secret=client_secret,
                nonce=stored.get("nonce"),
            )

        if not claims.get("email") or not claims.get("sub"):
            userinfo = await self.oidc.fetch_userinfo(discovery, tokens.get("access_token"))
            if claims.get("sub") and userinfo.get("sub") and userinfo["sub"] != claims["sub"]:
                raise SsoAuthError("Userinfo subject does not match ID token")
            claims = {**userinfo, **{k: v for k, v in claims.items() if v}}

        subject_id = claims.get("sub")
        email = claims.get("email")
        if not subject_id:
            raise SsoAuthError("No user identifier found in claims")
        if not email:
            raise SsoAuthError("Email not provided by identity provider")

        email = InputSanitizer.sanitize_email(email)
        name = claims.get("name") or claims.get("preferred_username") or email
        return SsoIdentity(
            config_id=config.id,
            protocol=SsoProtocol.OIDC,
            subject_id=str(subject_id),
            email=email,
            name=name,
        )

    async def handle_saml_callback(self, saml_response: Optional[str], relay_state: Optional[str]) -> SsoIdentity:
        """
        Validate a SAML response posted to the assertion consumer service.

        Raises:
            InvalidOrExpiredCorrelationStateError: Unknown, reused or expired RelayState
            SsoAuthError: The response is not acceptable
        """
        stored = await self._take_state(relay_state, SsoProtocol.SAML)
        config = await self._get_enabled_config(uuid.UUID(stored["config_id"]))

        assertion = saml.parse_saml_response(
            saml_response,
            idp_cert=config.saml_cert,
            sp_entity_id=get_sp_entity_id(config),
            now=self.clock(),
            clock_skew_seconds=settings.sso.saml_clock_skew_seconds,
            expected_request_id=stored.get("request_id"),
        )

        email = assertion.email or assertion.name_id
        if not email or "@" not in email:
            raise SsoAuthError("Email not provided by identity provider")
        email = InputSanitizer.sanitize_email(email)

        return SsoIdentity(
            config_id=config.id,
            protocol=SsoProtocol.SAML,
            subject_id=assertion.name_id or email,
            email=email,
            name=assertion.name or email.split("@")[0],
        )

    # ========================================================================
    # Just-in-time provisioning
    # ========================================================================

    async def authenticate(self, identity: SsoIdentity) -> User:
        config = await self._get_enabled_config(identity.config_id)
        return await self.find_or_create_user(identity.email, identity.name, identity.subject_id, config)

    async def find_or_create_user(
        self,
        email: str,
        name: str,
        subject_id: str,
        config: SsoConfig,
    ) -> User:
        """
        Map an SSO identity onto a local user.

        Lookup order: the linked (provider, subject) pair, then an existing
        account with the same email in the same company, which is linked and
        switched to the provider as its credential source, then a new account
        when auto-creation is on and the email domain is allowed.
        """
        user = await self.users.find_by_sso_subject(config.id, subject_id)
        if user is not None:
            return user

        user = await self.users.find_by_email(email)
        if user is not None:
            if user.company_id != config.company_id:
                logger.warning(
                    "SSO email belongs to another company",
                    config_id=str(config.id),
                    user_id=str(user.id),
                )
                raise CrossTenantEmailCollisionError()
            user.sso_subject_id = subject_id
            user.sso_provider_id = config.id
            user.auth_source = AuthSource(config.protocol.value)
            user = await self.users.save(user)
            logger.info("SSO identity linked to existing user", user_id=str(user.id), config_id=str(config.id))
            return user

        if not config.auto_create_users:
            raise AutoProvisioningDisabledError()
        if not domain_allowed(email, config.email_domains):
            raise EmailDomainNotAllowedError()

        role = config.default_role if config.default_role in DIRECTORY_ASSIGNABLE_ROLES else Role.USER
        now = self.clock()
        user = User(
            id=uuid.uuid4(),
            email=email,
            name=name,
            password_hash=None,
            role=role,
            auth_source=AuthSource(config.protocol.value),
            company_id=config.company_id,
            park_id=await self.tenants.get_company_park_id(config.company_id),
            sso_subject_id=subject_id,
            sso_provider_id=config.id,
            is_active=True,
            twofa_enabled=False,
            created_at=now,
            updated_at=now,
        )
        user = await self.users.add(user)
        logger.info("SSO user provisioned", user_id=str(user.id), config_id=str(config.id))
        return user

    # ========================================================================
    # Discovery and metadata
    # ========================================================================

    async def discover(self, email: str) -> DiscoverResult:
        """
        Find the enabled SSO configuration that accepts this email.

        A configuration listing the email's domain wins over one with an
        empty domain list.
        """
        domain = InputSanitizer.email_domain(email or "")
        if not domain:
            return DiscoverResult(has_sso=False)

        catch_all: Optional[SsoConfig] = None
        match: Optional[SsoConfig] = None
        for config in await self.configs.list_enabled():
            domains = {d.strip().lower() for d in (config.email_domains or []) if d}
            if domain in domains:
                match = config
                break
            if not domains and catch_all is None:
                catch_all = config

        config = match or catch_all
        if config is None:
            return DiscoverResult(has_sso=False)
        return DiscoverResult(
            has_sso=True,
            config_id=config.id,
            protocol=config.protocol,
            display_name=config.display_name,
        )

    async def saml_metadata(self, config_id: uuid.UUID) -> str:
        config = await self.configs.get(config_id)
        if config is None:
            raise NotFoundError("SSO configuration not found")
        if config.protocol is not SsoProtocol.SAML:
            raise SsoConfigError("Metadata is only available for SAML configurations")
        return saml.build_sp_metadata(get_sp_entity_id(config), get_acs_url(config))
