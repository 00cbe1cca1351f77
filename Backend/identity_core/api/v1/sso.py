"""
SSO endpoints.

Browser-facing routes answer with redirects: to the identity provider on
init, and back to the frontend after a callback, either with a token or
with an error message.
"""

import uuid
from typing import Optional
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Form, Request, Response, status
from fastapi.responses import RedirectResponse

from identity_core.core.config import settings
from identity_core.core.dependencies import (
    AdminUserDep,
    LoginServiceDep,
    SsoConfigServiceDep,
    SsoServiceDep,
    ensure_company_access,
)
from identity_core.core.exceptions import IdentityError
from identity_core.schemas.auth import MessageResponse
from identity_core.schemas.sso import (
    SsoConfigCreate,
    SsoConfigResponse,
    SsoConfigUpdate,
    SsoDiscoverResponse,
)
from identity_core.services.login import LoginService
from identity_core.services.sso.federation import SsoFederationService, SsoIdentity

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sso", tags=["SSO"])


def _frontend_url(path: str, **params: str) -> str:
    base = settings.app.frontend_base_url.rstrip("/")
    return f"{base}{path}?{urlencode(params)}" if params else f"{base}{path}"


def _error_redirect(message: str) -> RedirectResponse:
    return RedirectResponse(url=_frontend_url("/login", error=message), status_code=status.HTTP_302_FOUND)


async def _finish_login(
    identity: SsoIdentity,
    sso_service: SsoFederationService,
    login_service: LoginService,
) -> RedirectResponse:
    user = await sso_service.authenticate(identity)
    outcome = await login_service.complete_primary_authentication(user)
    logger.info(
        "SSO login succeeded",
        user_id=str(user.id),
        protocol=identity.protocol.value,
        state=outcome.state.value,
    )

    params = {"token": outcome.token}
    if outcome.requires_twofa:
        params["twofa_pending"] = "true"
        if outcome.twofa_setup_required:
            params["twofa_setup_required"] = "true"
    return RedirectResponse(url=_frontend_url("/sso/callback", **params), status_code=status.HTTP_302_FOUND)


# ============================================================================
# Public endpoints
# ============================================================================

@router.get("/discover", response_model=SsoDiscoverResponse)
async def discover(sso_service: SsoServiceDep, email: str = ""):
    """Tell the login form whether this email should sign in through SSO."""
    result = await sso_service.discover(email)
    return SsoDiscoverResponse(
        has_sso=result.has_sso,
        config_id=result.config_id,
        protocol=result.protocol,
        display_name=result.display_name,
    )


@router.get("/init/{config_id}")
async def init_sso(config_id: uuid.UUID, sso_service: SsoServiceDep):
    """Redirect the browser to the identity provider."""
    try:
        auth_url = await sso_service.build_authorization_url(config_id)
    except IdentityError as e:
        logger.warning("SSO init failed", config_id=str(config_id), error=e.message)
        return _error_redirect("Failed to initiate SSO login")
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/callback/oidc")
async def oidc_callback(
    request: Request,
    sso_service: SsoServiceDep,
    login_service: LoginServiceDep,
    state: Optional[str] = None,
):
    try:
        identity = await sso_service.handle_oidc_callback(dict(request.query_params), state)
        return await _finish_login(identity, sso_service, login_service)
    except IdentityError as e:
        logger.warning("OIDC callback rejected", code=e.code, error=e.message)
        return _error_redirect(e.message)


@router.post("/callback/saml")
async def saml_callback(
    sso_service: SsoServiceDep,
    login_service: LoginServiceDep,
    SAMLResponse: Optional[str] = Form(None),
    RelayState: Optional[str] = Form(None),
):
    try:
        identity = await sso_service.handle_saml_callback(SAMLResponse, RelayState)
        return await _finish_login(identity, sso_service, login_service)
    except IdentityError as e:
        logger.warning("SAML callback rejected", code=e.code, error=e.message)
        return _error_redirect(e.message)


@router.get("/metadata/{config_id}")
async def saml_metadata(config_id: uuid.UUID, sso_service: SsoServiceDep):
    """SAML service provider metadata for the IdP administrator."""
    metadata = await sso_service.saml_metadata(config_id)
    return Response(content=metadata, media_type="application/xml")


# ============================================================================
# Configuration
# ============================================================================

@router.get("/config/{company_id}", response_model=SsoConfigResponse)
async def get_config(company_id: uuid.UUID, user: AdminUserDep, service: SsoConfigServiceDep):
    ensure_company_access(user, company_id)
    config = await service.get_for_company(company_id)
    return SsoConfigResponse.from_config(config)


@router.post("/config", response_model=SsoConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_config(body: SsoConfigCreate, user: AdminUserDep, service: SsoConfigServiceDep):
    ensure_company_access(user, body.company_id)
    config = await service.create(body)
    return SsoConfigResponse.from_config(config)


@router.put("/config/{config_id}", response_model=SsoConfigResponse)
async def update_config(
    config_id: uuid.UUID,
    body: SsoConfigUpdate,
    user: AdminUserDep,
    service: SsoConfigServiceDep,
):
    config = await service.get(config_id)
    ensure_company_access(user, config.company_id)
    config = await service.update(config_id, body)
    return SsoConfigResponse.from_config(config)


@router.delete("/config/{config_id}", response_model=MessageResponse)
async def delete_config(config_id: uuid.UUID, user: AdminUserDep, service: SsoConfigServiceDep):
    config = await service.get(config_id)
    ensure_company_access(user, config.company_id)
    await service.delete(config_id)
    return MessageResponse(message="SSO configuration deleted")
