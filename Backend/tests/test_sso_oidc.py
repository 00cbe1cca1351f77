"""
Tests for OIDC SSO.

Tests cover:
- Authorization URL with state, nonce and PKCE (S256)
- Code exchange and ID token validation through the provider's JWKS
- Correlation state being single use, expiring and protocol bound
- Provider errors, nonce and audience mismatches
- Userinfo fallback when the ID token carries no email
"""

import base64
import hashlib
import json
import time
import uuid
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from identity_core.core.exceptions import (
    InvalidOrExpiredCorrelationStateError,
    NotFoundError,
    SsoAuthError,
    SsoConfigError,
)
from identity_core.core.kv_store import InMemoryKeyValueStore
from identity_core.models.identity import SsoProtocol
from identity_core.services.sso.federation import SsoFederationService
from identity_core.services.sso.oidc import OidcClient, discovery_url_for, generate_pkce_pair

from fakes import make_sso_config


ISSUER = "https://idp.acme.com"
CLIENT_ID = "booking-client"


class FakeOidcProvider:
    """Discovery, token, JWKS and userinfo endpoints served through httpx.MockTransport."""

    def __init__(self):
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = "key-1"
        self.published_kid = "key-1"
        self.nonce = None
        self.code_challenge = None
        self.audience = CLIENT_ID
        self.include_email = True
        self.expected_secret = None
        self.token_requests = []
        self.discovery_requests = 0
        self.userinfo = {"sub": "idp-user-1", "email": "alice@acme.com", "name": "Alice From Userinfo"}

    def discovery(self):
        return {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
        }

    def jwks(self):
        jwk = json.loads(RSAAlgorithm.to_jwk(self.key.public_key()))
        jwk.update({"kid": self.published_kid, "alg": "RS256", "use": "sig"})
        return {"keys": [jwk]}

    def id_token(self):
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": self.audience,
            "sub": "idp-user-1",
            "name": "Alice Smith",
            "nonce": self.nonce,
            "iat": now,
            "exp": now + 300,
        }
        if self.include_email:
            claims["email"] = "Alice@Acme.com"
        return jwt.encode(claims, self.key, algorithm="RS256", headers={"kid": self.kid})

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            self.discovery_requests += 1
            return httpx.Response(200, json=self.discovery())
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks())
        if path == "/userinfo":
            if request.headers.get("Authorization") != "Bearer access-123":
                return httpx.Response(401)
            return httpx.Response(200, json=self.userinfo)
        if path == "/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            verifier = form.get("code_verifier", "")
            digest = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
            if form.get("code") != "auth-code" or digest != self.code_challenge:
                return httpx.Response(400, json={"error": "invalid_grant"})
            if self.expected_secret and form.get("client_secret") != self.expected_secret:
                return httpx.Response(401, json={"error": "invalid_client"})
            return httpx.Response(
                200,
                json={"id_token": self.id_token(), "access_token": "access-123", "token_type": "Bearer"},
            )
        return httpx.Response(404)


class OidcEnv:
    def __init__(self, users, tenants, sso_configs, vault, clock, **config_fields):
        self.provider = FakeOidcProvider()
        self.company_id = tenants.add_company(tenants.add_park())
        self.config = make_sso_config(self.company_id, SsoProtocol.OIDC, **config_fields)
        sso_configs.configs[self.config.id] = self.config
        self.state_clock = ManualClock()
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(self.provider.handler))
        self.service = SsoFederationService(
            configs=sso_configs,
            users=users,
            tenants=tenants,
            state_store=InMemoryKeyValueStore(clock=self.state_clock),
            vault=vault,
            http_client=self.http,
            clock=clock,
        )

    async def start(self):
        """Begin a login and let the provider learn the nonce and challenge."""
        url = await self.service.build_authorization_url(self.config.id)
        query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        self.provider.nonce = query["nonce"]
        self.provider.code_challenge = query["code_challenge"]
        return url, query


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def env(users, tenants, sso_configs, vault, clock):
    return OidcEnv(users, tenants, sso_configs, vault, clock)


# =============================================================================
# Helpers
# =============================================================================


class TestOidcHelpers:
    """Tests for PKCE and discovery URL helpers."""

    def test_pkce_pair(self):
        verifier, challenge = generate_pkce_pair()
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")

        assert 43 <= len(verifier) <= 128
        assert challenge == expected

    def test_discovery_url(self):
        assert discovery_url_for("https://idp.acme.com") == "https://idp.acme.com/.well-known/openid-configuration"
        assert discovery_url_for("https://idp.acme.com/realms/x/") == (
            "https://idp.acme.com/realms/x/.well-known/openid-configuration"
        )
        full = "https://idp.acme.com/.well-known/openid-configuration"
        assert discovery_url_for(full) == full

    @pytest.mark.asyncio
    async def test_discovery_failure_is_config_error(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        with pytest.raises(SsoConfigError):
            await OidcClient(http).get_discovery_document("https://broken.example.com")


# =============================================================================
# Authorization request
# =============================================================================


class TestOidcAuthorization:
    """Tests for the outbound redirect."""

    @pytest.mark.asyncio
    async def test_authorization_url(self, env):
        url, query = await env.start()

        assert url.startswith(f"{ISSUER}/authorize?")
        assert query["client_id"] == CLIENT_ID
        assert query["response_type"] == "code"
        assert query["scope"] == "openid email profile"
        assert query["redirect_uri"] == "http://api.test/api/v1/sso/callback/oidc"
        assert query["code_challenge_method"] == "S256"
        assert query["state"] and query["nonce"]

    @pytest.mark.asyncio
    async def test_each_login_gets_fresh_state(self, env):
        _, first = await env.start()
        _, second = await env.start()

        assert first["state"] != second["state"]
        assert first["nonce"] != second["nonce"]
        assert env.provider.discovery_requests == 1

    @pytest.mark.asyncio
    async def test_disabled_config_refused(self, env):
        env.config.is_enabled = False

        with pytest.raises(SsoConfigError):
            await env.service.build_authorization_url(env.config.id)

    @pytest.mark.asyncio
    async def test_unknown_config(self, env):
        with pytest.raises(NotFoundError):
            await env.service.build_authorization_url(uuid.uuid4())


# =============================================================================
# Callback
# =============================================================================


class TestOidcCallback:
    """Tests for the authorization response."""

    @pytest.mark.asyncio
    async def test_successful_callback(self, env):
        _, query = await env.start()

        identity = await env.service.handle_oidc_callback({"code": "auth-code", "state": query["state"]}, query["state"])

        assert identity.protocol is SsoProtocol.OIDC
        assert identity.config_id == env.config.id
        assert identity.subject_id == "idp-user-1"
        assert identity.email == "alice@acme.com"
        assert identity.name == "Alice Smith"
        token_request = env.provider.token_requests[0]
        assert token_request["redirect_uri"] == "http://api.test/api/v1/sso/callback/oidc"
        assert "client_secret" not in token_request

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, env):
        _, query = await env.start()
        params = {"code": "auth-code", "state": query["state"]}
        await env.service.handle_oidc_callback(params, query["state"])

        with pytest.raises(InvalidOrExpiredCorrelationStateError):
            await env.service.handle_oidc_callback(params, query["state"])

    @pytest.mark.asyncio
    async def test_state_expires_after_ten_minutes(self, env):
        _, query = await env.start()
        env.state_clock.now += 600

        with pytest.raises(InvalidOrExpiredCorrelationStateError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [None, "", "never-issued"])
    async def test_unknown_state(self, env, state):
        with pytest.raises(InvalidOrExpiredCorrelationStateError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, state)

    @pytest.mark.asyncio
    async def test_provider_error_consumes_state(self, env):
        _, query = await env.start()

        with pytest.raises(SsoAuthError) as exc_info:
            await env.service.handle_oidc_callback(
                {"error": "access_denied", "error_description": "User cancelled"},
                query["state"],
            )
        assert "access_denied" in exc_info.value.message

        with pytest.raises(InvalidOrExpiredCorrelationStateError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

    @pytest.mark.asyncio
    async def test_missing_code(self, env):
        _, query = await env.start()

        with pytest.raises(SsoAuthError):
            await env.service.handle_oidc_callback({}, query["state"])

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, env):
        _, query = await env.start()
        env.provider.nonce = "replayed-nonce"

        with pytest.raises(SsoAuthError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

    @pytest.mark.asyncio
    async def test_audience_mismatch(self, env):
        _, query = await env.start()
        env.provider.audience = "another-client"

        with pytest.raises(SsoAuthError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

    @pytest.mark.asyncio
    async def test_token_signed_by_unknown_key(self, env):
        _, query = await env.start()
        env.provider.kid = "rotated-away"

        with pytest.raises(SsoAuthError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

    @pytest.mark.asyncio
    async def test_rejected_code_exchange(self, env):
        _, query = await env.start()

        with pytest.raises(SsoAuthError):
            await env.service.handle_oidc_callback({"code": "stolen-code"}, query["state"])

    @pytest.mark.asyncio
    async def test_userinfo_fallback_for_email(self, env):
        _, query = await env.start()
        env.provider.include_email = False

        identity = await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

        assert identity.email == "alice@acme.com"
        assert identity.name == "Alice Smith"

    @pytest.mark.asyncio
    async def test_userinfo_subject_mismatch(self, env):
        _, query = await env.start()
        env.provider.include_email = False
        env.provider.userinfo = {"sub": "someone-else", "email": "mallory@acme.com"}

        with pytest.raises(SsoAuthError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

    @pytest.mark.asyncio
    async def test_client_secret_sent_when_configured(self, users, tenants, sso_configs, vault, clock):
        env = OidcEnv(
            users, tenants, sso_configs, vault, clock,
            oidc_client_secret_encrypted=vault.encrypt("client-s3cret"),
        )
        env.provider.expected_secret = "client-s3cret"
        _, query = await env.start()

        identity = await env.service.handle_oidc_callback({"code": "auth-code"}, query["state"])

        assert identity.subject_id == "idp-user-1"
        assert env.provider.token_requests[0]["client_secret"] == "client-s3cret"

    @pytest.mark.asyncio
    async def test_saml_state_rejected_on_oidc_callback(self, env):
        await env.service.state_store.put("saml-state", {"config_id": str(env.config.id), "protocol": "saml"}, ttl=600)

        with pytest.raises(InvalidOrExpiredCorrelationStateError):
            await env.service.handle_oidc_callback({"code": "auth-code"}, "saml-state")
