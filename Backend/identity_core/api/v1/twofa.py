"""
Two-factor authentication endpoints.

setup, confirm and verify accept the partial token handed out by login so a
user can finish signing in; the remaining endpoints need a full session.
"""

import uuid

from fastapi import APIRouter

from identity_core.core.dependencies import (
    ClientIpDep,
    CurrentUserDep,
    LoginServiceDep,
    PendingUserDep,
    TokenClaimsDep,
    UserAgentDep,
)
from identity_core.schemas.auth import (
    MessageResponse,
    TrustedDeviceResponse,
    TwoFaCodeRequest,
    TwoFaConfirmResponse,
    TwoFaDisableRequest,
    TwoFaSetupResponse,
    TwoFaStatusResponse,
    TwoFaVerifyRequest,
    TwoFaVerifyResponse,
    UserResponse,
)

router = APIRouter(prefix="/auth/2fa", tags=["Two-Factor Authentication"])


@router.post("/setup", response_model=TwoFaSetupResponse)
async def setup(user: PendingUserDep, login_service: LoginServiceDep):
    """Start enrolment: returns a fresh secret and its QR code."""
    setup = await login_service.begin_setup(user.id)
    return TwoFaSetupResponse(
        secret=setup.secret,
        qr_code_url=setup.qr_code_url,
        otpauth_url=setup.otpauth_url,
    )


@router.post("/confirm", response_model=TwoFaConfirmResponse)
async def confirm(
    body: TwoFaCodeRequest,
    user: PendingUserDep,
    claims: TokenClaimsDep,
    login_service: LoginServiceDep,
):
    """
    Enable 2FA with a code from the authenticator app.

    The backup codes are returned once. A caller holding a partial token
    also receives a full session token.
    """
    confirmation = await login_service.confirm_setup(
        user.id,
        body.code,
        from_partial_session=claims.twofa_pending,
        keep_logged_in=claims.keep_logged_in,
    )
    return TwoFaConfirmResponse(backup_codes=confirmation.backup_codes, token=confirmation.token)


@router.post("/verify", response_model=TwoFaVerifyResponse)
async def verify(
    body: TwoFaVerifyRequest,
    user: PendingUserDep,
    claims: TokenClaimsDep,
    login_service: LoginServiceDep,
    client_ip: ClientIpDep,
    user_agent: UserAgentDep,
):
    """Exchange a TOTP or backup code for a full session."""
    outcome = await login_service.verify_second_factor(
        user.id,
        body.code,
        trust_device=body.trust_device,
        device_name=user_agent,
        ip_address=client_ip,
        keep_logged_in=claims.keep_logged_in,
    )
    return TwoFaVerifyResponse(
        token=outcome.token,
        user=UserResponse.from_user(outcome.user),
        device_token=outcome.device_token,
    )


@router.post("/disable", response_model=MessageResponse)
async def disable(body: TwoFaDisableRequest, current_user: CurrentUserDep, login_service: LoginServiceDep):
    await login_service.disable(current_user.id, body.password)
    return MessageResponse(message="Two-factor authentication disabled")


@router.get("/status", response_model=TwoFaStatusResponse)
async def status(current_user: CurrentUserDep, login_service: LoginServiceDep):
    result = await login_service.status(current_user.id)
    return TwoFaStatusResponse(
        enabled=result.enabled,
        backup_codes_remaining=result.backup_codes_remaining,
        enforcement=result.enforcement.value,
        trusted_device_mode=result.trusted_device_mode,
    )


@router.get("/trusted-devices", response_model=list[TrustedDeviceResponse])
async def list_trusted_devices(current_user: CurrentUserDep, login_service: LoginServiceDep):
    devices = await login_service.list_devices(current_user.id)
    return [TrustedDeviceResponse.from_device(device) for device in devices]


@router.delete("/trusted-devices/{device_id}", response_model=MessageResponse)
async def revoke_trusted_device(
    device_id: uuid.UUID,
    current_user: CurrentUserDep,
    login_service: LoginServiceDep,
):
    await login_service.revoke_device(current_user.id, device_id)
    return MessageResponse(message="Trusted device revoked")
