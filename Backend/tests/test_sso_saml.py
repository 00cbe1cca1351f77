"""
Tests for SAML SSO.

Tests cover:
- AuthnRequest encoding over the redirect binding
- Signed responses accepted, unsigned, tampered or foreign-signed ones refused
- Status, validity window, audience and InResponseTo checks
- Service provider metadata
- The federation callback consuming RelayState
"""

import base64
import zlib
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from lxml import etree
from signxml import XMLSigner

import httpx

from identity_core.core.exceptions import InvalidOrExpiredCorrelationStateError, SsoAuthError, SsoConfigError
from identity_core.core.kv_store import InMemoryKeyValueStore
from identity_core.models.identity import SsoProtocol
from identity_core.services.sso import saml
from identity_core.services.sso.federation import SsoFederationService, get_sp_entity_id

from fakes import NOW, make_sso_config


SP_ENTITY_ID = "http://api.test/api/v1/sso/metadata/test"
STATUS_FAILED = "urn:oasis:names:tc:SAML:2.0:status:Requester"


def make_identity_provider(common_name="idp.acme.com"):
    """Return (key_pem, cert_pem) for a self-signed signing certificate."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return key_pem, cert.public_bytes(serialization.Encoding.PEM).decode()


IDP_KEY, IDP_CERT = make_identity_provider()
OTHER_KEY, OTHER_CERT = make_identity_provider("evil.example.com")


def _instant(dt):
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def response_xml(
    name_id="alice@acme.com",
    email="alice@acme.com",
    display_name="Alice Smith",
    audience=SP_ENTITY_ID,
    not_before=NOW - timedelta(minutes=5),
    not_on_or_after=NOW + timedelta(minutes=5),
    in_response_to=None,
    status=saml.STATUS_SUCCESS,
):
    in_response = f' InResponseTo="{in_response_to}"' if in_response_to else ""
    name_id_xml = f"<saml:NameID>{name_id}</saml:NameID>" if name_id else ""
    attributes = ""
    if email:
        attributes += (
            '<saml:Attribute Name="email">'
            f"<saml:AttributeValue>{email}</saml:AttributeValue>"
            "</saml:Attribute>"
        )
    if display_name:
        attributes += (
            '<saml:Attribute Name="displayName">'
            f"<saml:AttributeValue>{display_name}</saml:AttributeValue>"
            "</saml:Attribute>"
        )
    xml = (
        '<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
        'xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" '
        f'ID="_resp1" Version="2.0" IssueInstant="{_instant(NOW)}"{in_response}>'
        "<saml:Issuer>https://idp.acme.com</saml:Issuer>"
        f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>'
        f'<saml:Assertion ID="_assert1" Version="2.0" IssueInstant="{_instant(NOW)}">'
        "<saml:Issuer>https://idp.acme.com</saml:Issuer>"
        f"<saml:Subject>{name_id_xml}</saml:Subject>"
        f'<saml:Conditions NotBefore="{_instant(not_before)}" NotOnOrAfter="{_instant(not_on_or_after)}">'
        f"<saml:AudienceRestriction><saml:Audience>{audience}</saml:Audience></saml:AudienceRestriction>"
        "</saml:Conditions>"
        f"<saml:AttributeStatement>{attributes}</saml:AttributeStatement>"
        "</saml:Assertion>"
        "</samlp:Response>"
    )
    return etree.fromstring(xml.encode())


def sign(root, key=IDP_KEY, cert=IDP_CERT):
    return XMLSigner().sign(root, key=key, cert=cert)


def encode(root):
    return base64.b64encode(etree.tostring(root)).decode()


def parse(encoded, cert=IDP_CERT, **kwargs):
    kwargs.setdefault("sp_entity_id", SP_ENTITY_ID)
    kwargs.setdefault("now", NOW)
    kwargs.setdefault("clock_skew_seconds", 120)
    return saml.parse_saml_response(encoded, idp_cert=cert, **kwargs)


def decode_authn_request(url):
    query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
    xml = zlib.decompress(base64.b64decode(query["SAMLRequest"]), -15)
    return etree.fromstring(xml), query


# =============================================================================
# AuthnRequest and metadata
# =============================================================================


class TestAuthnRequest:
    """Tests for the outbound redirect binding."""

    def test_request_is_deflated_and_carries_relay_state(self):
        url, request_id = saml.build_authn_request(
            "https://idp.acme.com/saml/sso",
            sp_entity_id=SP_ENTITY_ID,
            acs_url="http://api.test/api/v1/sso/callback/saml",
            relay_state="relay-123",
            now=NOW,
        )

        request, query = decode_authn_request(url)
        assert url.startswith("https://idp.acme.com/saml/sso?")
        assert query["RelayState"] == "relay-123"
        assert request.get("ID") == request_id
        assert request.get("Destination") == "https://idp.acme.com/saml/sso"
        assert request.get("AssertionConsumerServiceURL") == "http://api.test/api/v1/sso/callback/saml"
        assert request.get("IssueInstant") == "2026-03-02T09:00:00Z"
        assert request.find("saml:Issuer", saml.NS).text == SP_ENTITY_ID

    def test_entry_point_with_query(self):
        url, _ = saml.build_authn_request(
            "https://idp.acme.com/sso?tenant=acme",
            sp_entity_id=SP_ENTITY_ID,
            acs_url="http://api.test/acs",
            relay_state="r",
            now=NOW,
        )
        assert url.startswith("https://idp.acme.com/sso?tenant=acme&SAMLRequest=")

    def test_missing_entry_point(self):
        with pytest.raises(SsoConfigError):
            saml.build_authn_request(None, SP_ENTITY_ID, "http://api.test/acs", "r", NOW)


class TestSpMetadata:
    """Tests for the service provider descriptor."""

    def test_metadata(self):
        xml = saml.build_sp_metadata(SP_ENTITY_ID, "http://api.test/api/v1/sso/callback/saml")

        root = etree.fromstring(xml.encode())
        acs = root.find("md:SPSSODescriptor/md:AssertionConsumerService", saml.NS)
        assert root.get("entityID") == SP_ENTITY_ID
        assert acs.get("Location") == "http://api.test/api/v1/sso/callback/saml"
        assert acs.get("Binding") == saml.BINDING_HTTP_POST

    def test_bare_certificate_body_is_wrapped(self):
        body = "".join(IDP_CERT.strip().splitlines()[1:-1])

        assert saml.pem_certificate(body).startswith("-----BEGIN CERTIFICATE-----\n")
        assert saml.pem_certificate(IDP_CERT) == IDP_CERT.strip()
        assert saml.pem_certificate("  ") is None


# =============================================================================
# Response validation
# =============================================================================


class TestParseSamlResponse:
    """Tests for signature and assertion checks."""

    def test_signed_response_accepted(self):
        assertion = parse(encode(sign(response_xml())))

        assert assertion.name_id == "alice@acme.com"
        assert assertion.email == "alice@acme.com"
        assert assertion.name == "Alice Smith"

    def test_bare_certificate_accepted(self):
        body = "".join(IDP_CERT.strip().splitlines()[1:-1])

        assertion = parse(encode(sign(response_xml())), cert=body)

        assert assertion.email == "alice@acme.com"

    def test_signed_assertion_accepted(self):
        root = response_xml()
        assertion = root.find("saml:Assertion", saml.NS)
        root.replace(assertion, sign(assertion))

        result = parse(encode(root))

        assert result.email == "alice@acme.com"

    def test_unsigned_response_rejected(self):
        with pytest.raises(SsoAuthError, match="not signed"):
            parse(encode(response_xml()))

    def test_tampered_response_rejected(self):
        signed = sign(response_xml())
        signed.find(".//saml:NameID", saml.NS).text = "mallory@acme.com"

        with pytest.raises(SsoAuthError, match="signature"):
            parse(encode(signed))

    def test_foreign_signature_rejected(self):
        signed = sign(response_xml(), key=OTHER_KEY, cert=OTHER_CERT)

        with pytest.raises(SsoAuthError):
            parse(encode(signed))

    def test_failed_status_rejected(self):
        signed = sign(response_xml(status=STATUS_FAILED))

        with pytest.raises(SsoAuthError, match="authentication failed"):
            parse(encode(signed))

    def test_expired_assertion(self):
        signed = sign(response_xml(not_on_or_after=NOW - timedelta(minutes=3)))

        with pytest.raises(SsoAuthError, match="expired"):
            parse(encode(signed))

    def test_clock_skew_tolerated(self):
        signed = sign(response_xml(not_on_or_after=NOW - timedelta(seconds=60)))

        assert parse(encode(signed)).email == "alice@acme.com"

    def test_not_yet_valid(self):
        signed = sign(response_xml(not_before=NOW + timedelta(minutes=10)))

        with pytest.raises(SsoAuthError, match="not yet valid"):
            parse(encode(signed))

    def test_audience_mismatch(self):
        signed = sign(response_xml(audience="https://other-sp.example.com"))

        with pytest.raises(SsoAuthError, match="audience"):
            parse(encode(signed))

    def test_in_response_to_checked(self):
        signed = sign(response_xml(in_response_to="_other-request"))

        with pytest.raises(SsoAuthError):
            parse(encode(signed), expected_request_id="_our-request")

        assert parse(encode(signed), expected_request_id="_other-request").email == "alice@acme.com"

    def test_missing_certificate(self):
        with pytest.raises(SsoConfigError):
            parse(encode(sign(response_xml())), cert=None)

    @pytest.mark.parametrize("payload", ["", "%%%not-base64%%%", base64.b64encode(b"<not-xml").decode()])
    def test_malformed_payloads(self, payload):
        with pytest.raises(SsoAuthError):
            parse(payload)


# =============================================================================
# Federation callback
# =============================================================================


class SamlEnv:
    def __init__(self, users, tenants, sso_configs, vault, clock):
        self.company_id = tenants.add_company(tenants.add_park())
        self.config = make_sso_config(self.company_id, SsoProtocol.SAML, saml_cert=IDP_CERT)
        sso_configs.configs[self.config.id] = self.config
        self.service = SsoFederationService(
            configs=sso_configs,
            users=users,
            tenants=tenants,
            state_store=InMemoryKeyValueStore(),
            vault=vault,
            http_client=httpx.AsyncClient(),
            clock=clock,
        )

    async def start(self):
        url = await self.service.build_authorization_url(self.config.id)
        request, query = decode_authn_request(url)
        return request.get("ID"), query["RelayState"]

    def response(self, **kwargs):
        kwargs.setdefault("audience", get_sp_entity_id(self.config))
        return encode(sign(response_xml(**kwargs)))


@pytest.fixture
def env(users, tenants, sso_configs, vault, clock):
    return SamlEnv(users, tenants, sso_configs, vault, clock)


class TestSamlCallback:
    """Tests for handle_saml_callback."""

    @pytest.mark.asyncio
    async def test_successful_callback(self, env):
        request_id, relay_state = await env.start()

        identity = await env.service.handle_saml_callback(env.response(in_response_to=request_id), relay_state)

        assert identity.protocol is SsoProtocol.SAML
        assert identity.config_id == env.config.id
        assert identity.subject_id == "alice@acme.com"
        assert identity.email == "alice@acme.com"
        assert identity.name == "Alice Smith"

    @pytest.mark.asyncio
    async def test_relay_state_is_single_use(self, env):
        request_id, relay_state = await env.start()
        response = env.response(in_response_to=request_id)
        await env.service.handle_saml_callback(response, relay_state)

        with pytest.raises(InvalidOrExpiredCorrelationStateError):
            await env.service.handle_saml_callback(response, relay_state)

    @pytest.mark.asyncio
    async def test_answer_to_another_request_rejected(self, env):
        _, relay_state = await env.start()

        with pytest.raises(SsoAuthError):
            await env.service.handle_saml_callback(env.response(in_response_to="_forged"), relay_state)

    @pytest.mark.asyncio
    async def test_subject_falls_back_to_email(self, env):
        _, relay_state = await env.start()

        identity = await env.service.handle_saml_callback(env.response(name_id=None), relay_state)

        assert identity.subject_id == "alice@acme.com"

    @pytest.mark.asyncio
    async def test_email_from_name_id(self, env):
        _, relay_state = await env.start()

        identity = await env.service.handle_saml_callback(
            env.response(name_id="Bob@Acme.com", email=None, display_name=None),
            relay_state,
        )

        assert identity.email == "bob@acme.com"
        assert identity.name == "bob"

    @pytest.mark.asyncio
    async def test_no_email_rejected(self, env):
        _, relay_state = await env.start()

        with pytest.raises(SsoAuthError):
            await env.service.handle_saml_callback(env.response(name_id="opaque-id", email=None), relay_state)

    @pytest.mark.asyncio
    async def test_unknown_relay_state(self, env):
        with pytest.raises(InvalidOrExpiredCorrelationStateError):
            await env.service.handle_saml_callback(env.response(), "made-up")

    @pytest.mark.asyncio
    async def test_metadata(self, env):
        xml = await env.service.saml_metadata(env.config.id)

        assert get_sp_entity_id(env.config) in xml
        assert "http://api.test/api/v1/sso/callback/saml" in xml
