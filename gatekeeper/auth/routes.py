"""
Gatekeeper - Authentication Routes

API endpoints for authentication:
- POST   /auth/signup                  - Register a pending account
- POST   /auth/login                   - Password check (may require 2FA)
- POST   /auth/login/verify            - Complete a 2FA login
- POST   /auth/otp/send                - (Re)send a one-time code
- POST   /auth/otp/verify              - Verify email and log in
- POST   /auth/password-reset          - Send a reset code
- POST   /auth/password-reset/confirm  - Set a new password with a reset code
- POST   /auth/refresh                 - Rotate the refresh token
- POST   /auth/logout                  - End the current session
- POST   /auth/logout-all              - End every session
- GET    /auth/sessions                - List active sessions
- DELETE /auth/sessions/{session_id}   - End another session
- DELETE /auth/sessions                - End every other session
- GET    /auth/me                      - Current account
- POST   /auth/change-password         - Change password (ends all sessions)
- GET    /auth/status                  - Onboarding redirect decision
- POST   /auth/complete-profile        - Mark the profile complete

Routes only translate between HTTP and AuthService; every failure is an
AuthError rendered by the handler registered in app.py.
"""

from typing import Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, status

from gatekeeper.auth.dependencies import (
    get_auth_service,
    get_current_account,
    get_request_context,
)
from gatekeeper.auth.devices import RequestContext
from gatekeeper.auth.schemas import (
    AccountPublic,
    ActiveSessionsResponse,
    ChangePasswordRequest,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    RefreshRequest,
    RefreshResponse,
    SendCodeRequest,
    SignupRequest,
    SignupResponse,
    StatusResponse,
    StepUpChallengeResponse,
    StepUpRequest,
    VerifyCodeRequest,
)
from gatekeeper.auth.service import (
    AuthenticatedAccount,
    AuthService,
    LoginResult,
    StatusReport,
)


router = APIRouter(prefix="/auth", tags=["authentication"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
}


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        account=result.account,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        session_id=result.session_id,
    )


def _status_response(report: StatusReport) -> StatusResponse:
    return StatusResponse(
        account=report.account,
        redirect_to=report.decision.redirect_to.value,
        message=report.decision.message,
        kyc_status=report.decision.kyc_status,
        kyc_rejection_reason=report.decision.kyc_rejection_reason,
    )


# ============================================================================
# Signup and email verification
# ============================================================================

@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
    summary="Register a new account",
)
async def signup(
    body: SignupRequest,
    service: AuthService = Depends(get_auth_service),
):
    """
    Create a pending, unverified account and email a verification code.

    Raises:
        409: Email already registered
    """
    account = await service.signup(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
    )
    return SignupResponse(
        message="Account created. Check your email for a verification code.",
        account=account,
    )


@router.post("/otp/send", response_model=MessageResponse, summary="Send a one-time code")
async def send_code(
    body: SendCodeRequest,
    service: AuthService = Depends(get_auth_service),
):
    await service.send_code(body.email, body.purpose)
    return MessageResponse(message="Verification code sent")


@router.post(
    "/otp/verify",
    response_model=LoginResponse,
    responses=_ERRORS,
    summary="Verify email address and log in",
)
async def verify_email(
    body: VerifyCodeRequest,
    service: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
):
    result = await service.verify_email(body.email, body.code, context)
    return _login_response(result)


# ============================================================================
# Login
# ============================================================================

@router.post(
    "/login",
    response_model=Union[LoginResponse, StepUpChallengeResponse],
    responses=_ERRORS,
    summary="Authenticate with email and password",
)
async def login(
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
):
    """
    Check credentials.

    Returns a StepUpChallengeResponse when two-factor authentication is
    enabled (a code has been sent), otherwise a LoginResponse.

    Raises:
        401: Invalid credentials, unverified email, or account locked
    """
    outcome = await service.authenticate(body.email, body.password, context)
    if isinstance(outcome, LoginResult):
        return _login_response(outcome)
    return StepUpChallengeResponse(email=outcome.email, method=outcome.method)


@router.post(
    "/login/verify",
    response_model=LoginResponse,
    responses=_ERRORS,
    summary="Complete a two-factor login",
)
async def verify_login(
    body: StepUpRequest,
    service: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
):
    result = await service.complete_step_up(body.email, body.code, context)
    return _login_response(result)


# ============================================================================
# Password reset
# ============================================================================

@router.post("/password-reset", response_model=MessageResponse, summary="Send a reset code")
async def request_password_reset(
    body: PasswordResetRequest,
    service: AuthService = Depends(get_auth_service),
):
    await service.request_password_reset(body.email)
    return MessageResponse(message="Password reset code sent")


@router.post(
    "/password-reset/confirm",
    response_model=MessageResponse,
    responses=_ERRORS,
    summary="Set a new password using a reset code",
)
async def confirm_password_reset(
    body: PasswordResetConfirmRequest,
    service: AuthService = Depends(get_auth_service),
):
    await service.reset_password(body.email, body.code, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in again.")


# ============================================================================
# Tokens and logout
# ============================================================================

@router.post(
    "/refresh",
    response_model=RefreshResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Exchange a refresh token for a new token pair",
)
async def refresh(
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
):
    """
    Single-use rotation: the presented refresh token is revoked and a
    new pair returned. Replaying a rotated token ends every session.
    """
    pair = await service.refresh(body.refresh_token)
    return RefreshResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.access_expires_in,
    )


@router.post("/logout", response_model=MessageResponse, summary="End the current session")
async def logout(
    body: Optional[LogoutRequest] = None,
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    await service.logout(
        account.account_id,
        account.session_id,
        body.refresh_token if body else None,
    )
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=MessageResponse, summary="End every session")
async def logout_all(
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    count = await service.logout_all_devices(account.account_id)
    return MessageResponse(message="Logged out from all devices", count=count)


# ============================================================================
# Session management
# ============================================================================

@router.get(
    "/sessions",
    response_model=ActiveSessionsResponse,
    summary="List active sessions",
)
async def list_sessions(
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    """List the account's signed-in devices, flagging the current one."""
    active = await service.list_sessions(account.account_id, account.session_id)
    return ActiveSessionsResponse(sessions=active, total=len(active))


@router.delete(
    "/sessions/{session_id}",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="End another session",
)
async def terminate_session(
    session_id: UUID,
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    await service.terminate_session(account.account_id, session_id, account.session_id)
    return MessageResponse(message="Session terminated")


@router.delete("/sessions", response_model=MessageResponse, summary="End every other session")
async def terminate_other_sessions(
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    count = await service.terminate_other_sessions(account.account_id, account.session_id)
    return MessageResponse(message="Other sessions terminated", count=count)


# ============================================================================
# Account
# ============================================================================

@router.get("/me", response_model=AccountPublic, summary="Get current account")
async def get_me(
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    return await service.get_account(account.account_id)


@router.post(
    "/change-password",
    response_model=MessageResponse,
    responses=_ERRORS,
    summary="Change password",
)
async def change_password(
    body: ChangePasswordRequest,
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    """Every session, including this one, ends after a password change."""
    await service.change_password(account.account_id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed. Please log in again.")


@router.get("/status", response_model=StatusResponse, summary="Onboarding redirect")
async def get_status(
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    return _status_response(await service.check_status(account.account_id))


@router.post("/complete-profile", response_model=StatusResponse, summary="Mark profile complete")
async def complete_profile(
    account: AuthenticatedAccount = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
):
    return _status_response(await service.complete_profile(account.account_id))
