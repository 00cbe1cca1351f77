"""
Authentication API endpoints.

This module handles password login and the current-user lookup. The
second factor lives in twofa.py.
"""

import structlog
from fastapi import APIRouter

from identity_core.core.dependencies import ClientIpDep, CurrentUserDep, LoginServiceDep
from identity_core.schemas.auth import LoginRequest, LoginResponse, UserResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/login", response_model=LoginResponse)
async def login(
    credentials: LoginRequest,
    login_service: LoginServiceDep,
    client_ip: ClientIpDep,
):
    """
    Login with email and password.

    Returns a full session token, or a short-lived partial token with
    requires_twofa set when a second factor (or its setup) is needed.
    """
    outcome = await login_service.login(
        email=credentials.email,
        password=credentials.password,
        device_token=credentials.device_token,
        keep_logged_in=credentials.keep_logged_in,
    )
    logger.info(
        "Login succeeded",
        user_id=str(outcome.user.id),
        state=outcome.state.value,
        client_ip=client_ip,
    )

    if outcome.requires_twofa:
        return LoginResponse(
            token=outcome.token,
            requires_twofa=True,
            twofa_pending=True,
            twofa_setup_required=outcome.twofa_setup_required or None,
        )
    return LoginResponse(token=outcome.token, user=UserResponse.from_user(outcome.user))


@router.get("/me", response_model=UserResponse)
async def me(current_user: CurrentUserDep):
    """Get the user of the current full session."""
    return UserResponse.from_user(current_user)
