"""
Gatekeeper - Authentication Database Models

SQLModel-based models for accounts, one-time codes, refresh tokens
and per-device sessions.
Uses PostgreSQL for production, SQLite for local development.

Security:
- Passwords stored as bcrypt hashes only
- Refresh tokens stored as SHA-256 hashes only
- Sessions are server-controlled for immediate revocation
- All timestamps in naive UTC
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Index, UniqueConstraint
from sqlalchemy import Enum as SQLEnum

from gatekeeper.clock import utcnow


class Role(str, Enum):
    """Platform roles. Closed set; CheckStatus branches on role class."""
    TEACHER = "teacher"
    SCHOOL = "school"
    RECRUITER = "recruiter"
    SUPPLIER = "supplier"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class KycStatus(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUBMISSION_REQUIRED = "resubmission_required"


class TwoFactorMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class CodePurpose(str, Enum):
    """What a one-time code may be spent on."""
    VERIFICATION = "verification"
    SIGNIN = "signin"
    RESET = "reset"


class LogoutReason(str, Enum):
    """Why a session became terminal."""
    USER_LOGOUT = "user_logout"
    INACTIVITY_TIMEOUT = "inactivity_timeout"
    TOKEN_EXPIRED = "token_expired"
    FORCED_LOGOUT = "forced_logout"
    PASSWORD_CHANGED = "password_changed"
    SECURITY_CONCERN = "security_concern"


class RevocationReason(str, Enum):
    """Why a refresh token was revoked."""
    ROTATED = "rotated"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PASSWORD_CHANGED = "password_changed"
    REUSE_DETECTED = "reuse_detected"
    SESSION_ENDED = "session_ended"


class Account(SQLModel, table=True):
    """
    One account per actor.

    Attributes:
        id: Unique identifier (UUIDv4)
        email: Login identifier, stored lower-cased (unique, indexed)
        password_hash: bcrypt hash; NULL only for federated-only accounts
        role: Platform role
        status: Lifecycle status; only `active` reaches the dashboard
        is_email_verified: Login is refused until this is set
        is_profile_complete: Onboarding flag consumed by CheckStatus
        kyc_status: Document review state for gated roles
        is_two_factor_enabled: Step-up code required after password
        failed_login_attempts: Consecutive failures since last success
        locked_until: Login refused while now < locked_until
    """
    __tablename__ = "accounts"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        description="Unique account identifier"
    )
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
        description="Lower-cased email address (login identifier)"
    )
    password_hash: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
        description="bcrypt password hash"
    )
    first_name: str = Field(
        sa_column=Column(String(100), nullable=False),
    )
    last_name: str = Field(
        sa_column=Column(String(100), nullable=False),
    )
    role: Role = Field(
        sa_column=Column(SQLEnum(Role), nullable=False),
        description="Platform role"
    )
    status: AccountStatus = Field(
        default=AccountStatus.PENDING,
        sa_column=Column(SQLEnum(AccountStatus), nullable=False, default=AccountStatus.PENDING),
    )
    is_email_verified: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    is_profile_complete: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    kyc_status: KycStatus = Field(
        default=KycStatus.NOT_SUBMITTED,
        sa_column=Column(SQLEnum(KycStatus), nullable=False, default=KycStatus.NOT_SUBMITTED),
    )
    kyc_rejection_reason: Optional[str] = Field(
        default=None,
        sa_column=Column(String(1000), nullable=True),
    )
    is_two_factor_enabled: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True),
    )
    two_factor_method: TwoFactorMethod = Field(
        default=TwoFactorMethod.EMAIL,
        sa_column=Column(SQLEnum(TwoFactorMethod), nullable=False, default=TwoFactorMethod.EMAIL),
    )
    failed_login_attempts: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, default=0),
    )
    locked_until: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    last_login_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    last_login_ip: Optional[str] = Field(
        default=None,
        sa_column=Column(String(45), nullable=True),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ExternalIdentity(SQLModel, table=True):
    """
    Identity asserted by a third-party provider and linked to an account.

    An account without a password hash must have at least one of these.
    """
    __tablename__ = "external_identities"
    __table_args__ = (
        UniqueConstraint("provider", "subject", name="uq_external_identity"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(
        foreign_key="accounts.id",
        nullable=False,
        index=True,
    )
    provider: str = Field(sa_column=Column(String(50), nullable=False))
    subject: str = Field(sa_column=Column(String(255), nullable=False))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )


class OneTimeCode(SQLModel, table=True):
    """
    Short-lived, single-use, purpose-scoped code.

    The autoincrement id orders codes by issue time, so the most recently
    issued code wins even when timestamps collide.
    """
    __tablename__ = "one_time_codes"
    __table_args__ = (
        Index("ix_one_time_codes_lookup", "email", "purpose", "expires_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(sa_column=Column(String(255), nullable=False))
    code: str = Field(sa_column=Column(String(12), nullable=False))
    purpose: CodePurpose = Field(
        sa_column=Column(SQLEnum(CodePurpose), nullable=False),
    )
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    is_used: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )


class RefreshToken(SQLModel, table=True):
    """
    Durable record of an issued refresh token.

    Rows are reserved before the token exists (is_finalized=False) so a
    Session can point at them; the hash is written once the token is minted.

    Attributes:
        token_hash: SHA-256 hex of the token (never the plaintext)
        is_finalized: False while the row is only a reservation
        is_revoked: Set exactly once, by compare-and-swap
        revoked_reason: Distinguishes rotation from logout for reuse detection
        replaced_by: Successor row id after rotation
    """
    __tablename__ = "refresh_tokens"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        description="Unique token identifier"
    )
    account_id: UUID = Field(
        foreign_key="accounts.id",
        nullable=False,
        index=True,
    )
    token_hash: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True, index=True),
        description="SHA-256 hash of refresh token"
    )
    is_finalized: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    is_revoked: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    revoked_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    revoked_reason: Optional[RevocationReason] = Field(
        default=None,
        sa_column=Column(SQLEnum(RevocationReason), nullable=True),
    )
    replaced_by: Optional[UUID] = Field(
        default=None,
        description="New token ID if rotated"
    )
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )


class Session(SQLModel, table=True):
    """
    Server-side record of one logged-in device.

    Invariant: expires_at == last_activity_at + inactivity window.
    A terminal session (is_active=False) always carries a logout_reason.
    """
    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_account_active", "account_id", "is_active"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        description="Unique session identifier"
    )
    account_id: UUID = Field(
        foreign_key="accounts.id",
        nullable=False,
    )
    refresh_token_id: UUID = Field(
        foreign_key="refresh_tokens.id",
        nullable=False,
    )
    user_agent: Optional[str] = Field(
        default=None,
        sa_column=Column(String(512), nullable=True),
    )
    browser: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    os: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    device: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    is_mobile: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    ip_address: Optional[str] = Field(
        default=None,
        sa_column=Column(String(45), nullable=True),
    )
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True),
    )
    last_activity_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    login_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    logout_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    logout_reason: Optional[LogoutReason] = Field(
        default=None,
        sa_column=Column(SQLEnum(LogoutReason), nullable=True),
    )
