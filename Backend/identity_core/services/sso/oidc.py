"""
OpenID Connect relying party.

Implements:
- Discovery document lookup with a process-wide cache
- Authorization Code flow with nonce and PKCE (S256)
- ID token signature, audience, issuer and nonce validation through the
  provider's JWKS
"""

import base64
import hashlib
import secrets
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urljoin

import httpx
import jwt
import structlog

from identity_core.core.exceptions import SsoAuthError, SsoConfigError


logger = structlog.get_logger(__name__)

ASYMMETRIC_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]
SYMMETRIC_ALGORITHMS = ["HS256", "HS384", "HS512"]
ID_TOKEN_LEEWAY_SECONDS = 60


# ===========================================
# PKCE Support
# ===========================================

def generate_pkce_pair() -> Tuple[str, str]:
    """
    Generate PKCE code verifier and challenge.

    Returns: (code_verifier, code_challenge)
    """
    code_verifier = secrets.token_urlsafe(64)[:128]  # 43-128 characters

    digest = hashlib.sha256(code_verifier.encode()).digest()
    code_challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")

    return code_verifier, code_challenge


def discovery_url_for(issuer_url: str) -> str:
    if "/.well-known/openid-configuration" in issuer_url:
        return issuer_url
    return urljoin(issuer_url.rstrip("/") + "/", ".well-known/openid-configuration")


# ===========================================
# OIDC Client
# ===========================================

class OidcClient:
    """Talks to one OpenID provider on behalf of an SSO configuration."""

    _discovery_cache: Dict[str, Dict] = {}

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    @classmethod
    def clear_discovery_cache(cls) -> None:
        cls._discovery_cache.clear()

    async def get_discovery_document(self, issuer_url: Optional[str]) -> Dict:
        """Fetch and cache the OIDC discovery document."""
        if not issuer_url:
            raise SsoConfigError("OIDC issuer URL not configured")

        discovery_url = discovery_url_for(issuer_url)
        if discovery_url in self._discovery_cache:
            return self._discovery_cache[discovery_url]

        try:
            response = await self.http_client.get(discovery_url)
            response.raise_for_status()
            discovery = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SsoConfigError(f"Failed to fetch OIDC discovery document: {e}")

        self._discovery_cache[discovery_url] = discovery
        return discovery

    @staticmethod
    def authorization_url(
        discovery: Dict,
        client_id: Optional[str],
        redirect_uri: str,
        scopes: str,
        state: str,
        nonce: str,
        code_challenge: str,
    ) -> str:
        auth_endpoint = discovery.get("authorization_endpoint")
        if not auth_endpoint:
            raise SsoConfigError("Authorization endpoint not found in discovery document")
        if not client_id:
            raise SsoConfigError("OIDC client_id not configured")

        params = {
            "client_id": client_id,
            "response_type": "code",
            "scope": scopes,
            "redirect_uri": redirect_uri,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        separator = "&" if "?" in auth_endpoint else "?"
        return f"{auth_endpoint}{separator}{urlencode(params)}"

    async def exchange_code(
        self,
        discovery: Dict,
        client_id: str,
        client_secret: Optional[str],
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str],
    ) -> Dict[str, Any]:
        token_endpoint = discovery.get("token_endpoint")
        if not token_endpoint:
            raise SsoConfigError("Token endpoint not found in discovery document")

        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
        }
        if client_secret:
            token_data["client_secret"] = client_secret
        if code_verifier:
            token_data["code_verifier"] = code_verifier

        try:
            response = await self.http_client.post(
                token_endpoint,
                data=token_data,
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            tokens = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SsoAuthError(f"Failed to exchange authorization code: {e}")

        if not tokens.get("id_token") and not tokens.get("access_token"):
            raise SsoAuthError("No tokens received from provider")
        return tokens

    async def _signing_key(self, discovery: Dict, header: Dict) -> Any:
        jwks_uri = discovery.get("jwks_uri")
        if not jwks_uri:
            raise SsoConfigError("jwks_uri not found in discovery document")

        try:
            response = await self.http_client.get(jwks_uri)
            response.raise_for_status()
            jwk_set = jwt.PyJWKSet.from_dict(response.json())
        except (httpx.HTTPError, ValueError, jwt.PyJWKSetError) as e:
            raise SsoAuthError(f"Failed to load provider signing keys: {e}")

        kid = header.get("kid")
        for key in jwk_set.keys:
            if kid is None or key.key_id == kid:
                return key.key
        raise SsoAuthError("No matching signing key for ID token")

    async def validate_id_token(
        self,
        discovery: Dict,
        id_token: str,
        client_id: str,
        client_secret: Optional[str],
        nonce: Optional[str],
    ) -> Dict[str, Any]:
        """Verify the ID token and return its claims."""
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise SsoAuthError(f"Malformed ID token: {e}")

        algorithm = header.get("alg")
        if algorithm in ASYMMETRIC_ALGORITHMS:
            key = await self._signing_key(discovery, header)
        elif algorithm in SYMMETRIC_ALGORITHMS and client_secret:
            key = client_secret
        else:
            raise SsoAuthError(f"Unsupported ID token algorithm: {algorithm}")

        try:
            claims = jwt.decode(
                id_token,
                key=key,
                algorithms=[algorithm],
                audience=client_id,
                issuer=discovery.get("issuer"),
                leeway=ID_TOKEN_LEEWAY_SECONDS,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            raise SsoAuthError(f"ID token validation failed: {e}")

        if nonce and claims.get("nonce") != nonce:
            raise SsoAuthError("ID token nonce mismatch")
        return claims

    async def fetch_userinfo(self, discovery: Dict, access_token: Optional[str]) -> Dict[str, Any]:
        userinfo_endpoint = discovery.get("userinfo_endpoint")
        if not userinfo_endpoint or not access_token:
            return {}
        try:
            response = await self.http_client.get(
                userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("OIDC userinfo request failed", error=str(e))
            return {}
