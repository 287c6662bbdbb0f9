"""
Gatekeeper - Authentication Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models; AccountPublic is the only
account projection that ever leaves the service (no password hash).
"""

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeeper.auth.models import (
    AccountStatus,
    CodePurpose,
    KycStatus,
    Role,
    TwoFactorMethod,
)


EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")
SPECIAL_CHARACTERS = re.compile(r"[^A-Za-z0-9]")


def _normalize_email(v: str) -> str:
    v = v.strip()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email format")
    return v.lower()


def _check_password_strength(v: str) -> str:
    """Enforce password strength requirements."""
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(v.encode("utf-8")) > 72:
        raise ValueError("Password must be at most 72 bytes")
    if not re.search(r"[A-Z]", v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", v):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"\d", v):
        raise ValueError("Password must contain at least one digit")
    if not SPECIAL_CHARACTERS.search(v):
        raise ValueError("Password must contain at least one special character")
    return v


def _check_code(v: str) -> str:
    if not re.fullmatch(r"\d{6}", v):
        raise ValueError("Code must be 6 digits")
    return v


class AccountPublic(BaseModel):
    """Sanitized account projection."""
    id: UUID
    email: str
    first_name: str
    last_name: str
    role: Role
    status: AccountStatus
    is_email_verified: bool
    is_profile_complete: bool
    kyc_status: KycStatus
    is_two_factor_enabled: bool
    two_factor_method: TwoFactorMethod
    last_login_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SignupRequest(BaseModel):
    """Request body for POST /auth/signup."""
    email: str = Field(..., description="Account email address")
    password: str = Field(..., description="Account password")
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    role: Role = Field(..., description="Platform role")

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)

    @field_validator("password")
    @classmethod
    def password_strength(cls, v):
        return _check_password_strength(v)

    @field_validator("role")
    @classmethod
    def no_admin_signup(cls, v):
        if v == Role.ADMIN:
            raise ValueError("Admin accounts cannot be self-registered")
        return v


class SignupResponse(BaseModel):
    message: str
    account: AccountPublic


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    email: str
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)


class StepUpRequest(BaseModel):
    """Request body for POST /auth/login/verify."""
    email: str
    code: str

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)

    @field_validator("code")
    @classmethod
    def code_format(cls, v):
        return _check_code(v)


class StepUpChallengeResponse(BaseModel):
    """Returned by login when a second factor is required."""
    requires_2fa: bool = True
    email: str
    method: TwoFactorMethod
    message: str = "Verification code sent"


class LoginResponse(BaseModel):
    """Response body for a completed login."""
    account: AccountPublic
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Seconds until the access token expires")
    session_id: UUID


class SendCodeRequest(BaseModel):
    email: str
    purpose: CodePurpose = CodePurpose.VERIFICATION

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)

    @field_validator("purpose")
    @classmethod
    def no_signin_codes(cls, v):
        # Sign-in codes only follow a successful password check
        if v == CodePurpose.SIGNIN:
            raise ValueError("Sign-in codes are sent after a password login")
        return v


class VerifyCodeRequest(BaseModel):
    """Request body for POST /auth/otp/verify (email verification)."""
    email: str
    code: str

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)

    @field_validator("code")
    @classmethod
    def code_format(cls, v):
        return _check_code(v)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)


class PasswordResetConfirmRequest(BaseModel):
    email: str
    code: str
    new_password: str

    @field_validator("email")
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)

    @field_validator("code")
    @classmethod
    def code_format(cls, v):
        return _check_code(v)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, v):
        return _check_password_strength(v)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, v):
        return _check_password_strength(v)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., min_length=1, description="Refresh token")


class RefreshResponse(BaseModel):
    """Response body for token refresh."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutRequest(BaseModel):
    """Request body for POST /auth/logout (optional)."""
    refresh_token: Optional[str] = Field(
        default=None,
        description="Refresh token of this device, revoked on logout"
    )


class MessageResponse(BaseModel):
    message: str
    count: Optional[int] = None


class SessionInfo(BaseModel):
    """Session information for user display."""
    id: UUID
    browser: Optional[str] = None
    os: Optional[str] = None
    device: Optional[str] = None
    is_mobile: bool = False
    ip_address: Optional[str] = None
    login_at: datetime
    last_activity_at: datetime
    is_current: bool = False

    model_config = ConfigDict(from_attributes=True)


class ActiveSessionsResponse(BaseModel):
    """Response body for GET /auth/sessions."""
    sessions: list[SessionInfo]
    total: int


class StatusResponse(BaseModel):
    """Response body for GET /auth/status."""
    account: AccountPublic
    redirect_to: str
    message: str
    kyc_status: KycStatus
    kyc_rejection_reason: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
    error_code: Optional[str] = None
    request_id: Optional[str] = None
    retry_after_minutes: Optional[int] = None
