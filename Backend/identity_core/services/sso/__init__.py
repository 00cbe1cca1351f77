"""SSO federation over OpenID Connect and SAML 2.0."""

from identity_core.services.sso.admin import SsoConfigService
from identity_core.services.sso.federation import (
    DiscoverResult,
    SsoFederationService,
    SsoIdentity,
    domain_allowed,
)
from identity_core.services.sso.oidc import OidcClient, generate_pkce_pair

__all__ = [
    "DiscoverResult",
    "OidcClient",
    "SsoConfigService",
    "SsoFederationService",
    "SsoIdentity",
    "domain_allowed",
    "generate_pkce_pair",
]
