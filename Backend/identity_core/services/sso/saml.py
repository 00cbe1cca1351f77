"""
SAML 2.0 service provider.

SP-initiated SSO: the AuthnRequest goes out over the HTTP-Redirect binding,
the Response comes back over HTTP-POST. Only content covered by a valid
XML signature from the configured IdP certificate is read.
"""

import base64
import binascii
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import structlog
from lxml import etree
from signxml import InvalidInput, InvalidSignature, XMLVerifier

from identity_core.core.exceptions import SsoAuthError, SsoConfigError


logger = structlog.get_logger(__name__)

UTC = timezone.utc

NS = {
    "samlp": "urn:oasis:names:tc:SAML:2.0:protocol",
    "saml": "urn:oasis:names:tc:SAML:2.0:assertion",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
    "md": "urn:oasis:names:tc:SAML:2.0:metadata",
}

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
NAMEID_FORMAT_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"

EMAIL_ATTRIBUTES = {
    "email",
    "mail",
    "emailaddress",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    "urn:oid:0.9.2342.19200300.100.1.3",
}
NAME_ATTRIBUTES = {
    "name",
    "displayname",
    "cn",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name",
    "http://schemas.microsoft.com/identity/claims/displayname",
    "urn:oid:2.16.840.1.113730.3.1.241",
}


@dataclass
class SamlAssertion:
    """Values read from the signed part of a SAML response."""

    name_id: Optional[str]
    email: Optional[str]
    name: Optional[str]
    attributes: dict[str, list[str]] = field(default_factory=dict)


def _q(prefix: str, tag: str) -> str:
    return f"{{{NS[prefix]}}}{tag}"


def _instant(dt: datetime) -> str:
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value or not value.strip():
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def pem_certificate(cert: Optional[str]) -> Optional[str]:
    """Accept either a PEM block or the bare base64 body of a certificate."""
    if not cert or not cert.strip():
        return None
    cert = cert.strip()
    if "BEGIN CERTIFICATE" in cert:
        return cert
    body = "".join(cert.split())
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return "-----BEGIN CERTIFICATE-----\n" + "\n".join(lines) + "\n-----END CERTIFICATE-----\n"


# ===========================================
# AuthnRequest
# ===========================================

def build_authn_request(
    entry_point: Optional[str],
    sp_entity_id: str,
    acs_url: str,
    relay_state: str,
    now: datetime,
) -> tuple[str, str]:
    """
    Build the redirect URL carrying a deflated AuthnRequest.

    Returns: (redirect_url, request_id)
    """
    if not entry_point:
        raise SsoConfigError("SAML entry point not configured")

    request_id = "_" + uuid.uuid4().hex
    request = etree.Element(
        _q("samlp", "AuthnRequest"),
        nsmap={"samlp": NS["samlp"], "saml": NS["saml"]},
        ID=request_id,
        Version="2.0",
        IssueInstant=_instant(now),
        Destination=entry_point,
        ProtocolBinding=BINDING_HTTP_POST,
        AssertionConsumerServiceURL=acs_url,
    )
    issuer = etree.SubElement(request, _q("saml", "Issuer"))
    issuer.text = sp_entity_id
    etree.SubElement(
        request,
        _q("samlp", "NameIDPolicy"),
        Format=NAMEID_FORMAT_EMAIL,
        AllowCreate="true",
    )

    xml = etree.tostring(request)
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    deflated = compressor.compress(xml) + compressor.flush()
    params = {
        "SAMLRequest": base64.b64encode(deflated).decode("ascii"),
        "RelayState": relay_state,
    }
    separator = "&" if "?" in entry_point else "?"
    return f"{entry_point}{separator}{urlencode(params)}", request_id


# ===========================================
# Response validation
# ===========================================

def _parse_xml(payload: bytes) -> etree._Element:
    parser = etree.XMLParser(resolve_entities=False, no_network=True, remove_comments=True, huge_tree=False)
    try:
        return etree.fromstring(payload, parser)
    except etree.XMLSyntaxError as e:
        raise SsoAuthError(f"SAML response could not be parsed: {e}")


def _verify_signature(root: etree._Element, cert_pem: str) -> etree._Element:
    """Return the element covered by a valid signature."""
    verifier = XMLVerifier()
    try:
        return verifier.verify(root, x509_cert=cert_pem).signed_xml
    except (InvalidSignature, InvalidInput) as exc:
        assertion = root.find(".//saml:Assertion", NS)
        if assertion is not None and assertion.find("ds:Signature", NS) is not None:
            try:
                return verifier.verify(assertion, x509_cert=cert_pem).signed_xml
            except (InvalidSignature, InvalidInput) as inner_exc:
                exc = inner_exc
        logger.warning("SAML signature validation failed", error=str(exc))
        raise SsoAuthError("SAML signature validation failed")


def _check_conditions(assertion: etree._Element, sp_entity_id: str, now: datetime, skew: timedelta) -> None:
    conditions = assertion.find("saml:Conditions", NS)
    if conditions is None:
        return

    not_before = parse_instant(conditions.get("NotBefore"))
    if not_before and now + skew < not_before:
        raise SsoAuthError("SAML assertion is not yet valid")
    not_on_or_after = parse_instant(conditions.get("NotOnOrAfter"))
    if not_on_or_after and now - skew >= not_on_or_after:
        raise SsoAuthError("SAML assertion has expired")

    audiences = [
        (node.text or "").strip()
        for node in conditions.findall("saml:AudienceRestriction/saml:Audience", NS)
    ]
    if audiences and sp_entity_id not in audiences:
        raise SsoAuthError("SAML assertion audience mismatch")


def _read_attributes(assertion: etree._Element) -> dict[str, list[str]]:
    attributes: dict[str, list[str]] = {}
    for attribute in assertion.findall("saml:AttributeStatement/saml:Attribute", NS):
        name = attribute.get("Name")
        if not name:
            continue
        values = [
            (value.text or "").strip()
            for value in attribute.findall("saml:AttributeValue", NS)
            if value.text and value.text.strip()
        ]
        attributes.setdefault(name, []).extend(values)
    return attributes


def _pick(attributes: dict[str, list[str]], names: set[str]) -> Optional[str]:
    for name, values in attributes.items():
        if name.lower() in names and values:
            return values[0]
    return None


def parse_saml_response(
    saml_response: str,
    idp_cert: Optional[str],
    sp_entity_id: str,
    now: datetime,
    clock_skew_seconds: int,
    expected_request_id: Optional[str] = None,
) -> SamlAssertion:
    """
    Validate a base64 SAML Response and return its signed assertion values.

    Raises:
        SsoAuthError: The response is malformed, unsigned, badly signed,
            unsuccessful, outside its validity window or for another audience
        SsoConfigError: No IdP certificate is configured
    """
    if not saml_response:
        raise SsoAuthError("SAMLResponse not provided")
    try:
        payload = base64.b64decode(saml_response, validate=False)
    except (binascii.Error, ValueError):
        raise SsoAuthError("SAMLResponse is not valid base64")

    root = _parse_xml(payload)
    if root.find(".//ds:Signature", NS) is None:
        raise SsoAuthError("SAML response is not signed")

    status = root.find("samlp:Status/samlp:StatusCode", NS)
    if status is not None and status.get("Value") != STATUS_SUCCESS:
        raise SsoAuthError(f"SAML authentication failed: {status.get('Value')}")

    cert_pem = pem_certificate(idp_cert)
    if not cert_pem:
        raise SsoConfigError("SAML IdP certificate not configured")

    signed = _verify_signature(root, cert_pem)
    if signed.tag == _q("saml", "Assertion"):
        assertion = signed
    else:
        if expected_request_id and signed.get("InResponseTo") not in (None, expected_request_id):
            raise SsoAuthError("SAML response does not answer our request")
        assertion = signed.find("saml:Assertion", NS)
    if assertion is None:
        raise SsoAuthError("Signed SAML assertion not found")

    _check_conditions(assertion, sp_entity_id, now, timedelta(seconds=clock_skew_seconds))

    name_id_node = assertion.find("saml:Subject/saml:NameID", NS)
    name_id = (name_id_node.text or "").strip() if name_id_node is not None else None
    attributes = _read_attributes(assertion)

    return SamlAssertion(
        name_id=name_id or None,
        email=_pick(attributes, EMAIL_ATTRIBUTES),
        name=_pick(attributes, NAME_ATTRIBUTES),
        attributes=attributes,
    )


# ===========================================
# SP metadata
# ===========================================

def build_sp_metadata(sp_entity_id: str, acs_url: str) -> str:
    descriptor = etree.Element(
        _q("md", "EntityDescriptor"),
        nsmap={"md": NS["md"]},
        entityID=sp_entity_id,
    )
    sp = etree.SubElement(
        descriptor,
        _q("md", "SPSSODescriptor"),
        AuthnRequestsSigned="false",
        WantAssertionsSigned="true",
        protocolSupportEnumeration=NS["samlp"],
    )
    name_id_format = etree.SubElement(sp, _q("md", "NameIDFormat"))
    name_id_format.text = NAMEID_FORMAT_EMAIL
    etree.SubElement(
        sp,
        _q("md", "AssertionConsumerService"),
        Binding=BINDING_HTTP_POST,
        Location=acs_url,
        index="1",
    )
    return etree.tostring(descriptor, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode("utf-8")
