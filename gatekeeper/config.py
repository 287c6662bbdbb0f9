"""
Gatekeeper - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Policy values (TTLs, lockout thresholds) are copied into an immutable
AuthPolicy that is injected into the authentication service, so tests
can run alternate policies without touching module state.

Security: No production secrets are hardcoded. Use .env for local development.
"""

from datetime import timedelta
from typing import List

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


DEV_ACCESS_SECRET = "dev-access-secret-change-me"
DEV_REFRESH_SECRET = "dev-refresh-secret-change-me"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        ACCESS_TOKEN_SECRET: Signing key for access tokens
        REFRESH_TOKEN_SECRET: Signing key for refresh tokens (must differ)
        DATABASE_URL: SQLAlchemy URL (SQLite for dev, PostgreSQL for prod)
        SESSION_SWEEP_INTERVAL_SECONDS: Inactivity sweep period (0 disables)
        ALLOWED_ORIGINS: CORS allowed origins for the frontend
    """

    # Token signing
    ACCESS_TOKEN_SECRET: str = DEV_ACCESS_SECRET
    REFRESH_TOKEN_SECRET: str = DEV_REFRESH_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "gatekeeper"
    JWT_AUDIENCE: str = "gatekeeper-users"

    # Credential lifetimes
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    OTP_EXPIRE_MINUTES: int = 10
    SESSION_INACTIVITY_MINUTES: int = 30
    SESSION_RETENTION_DAYS: int = 30

    # Brute-force protection
    MAX_FAILED_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_MINUTES: int = 30

    # Password hashing work factor
    BCRYPT_ROUNDS: int = 12

    # Background maintenance
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300

    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./gatekeeper.db"

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


class AuthPolicy(BaseModel):
    """
    Immutable authentication policy.

    Built once from Settings at startup and passed to AuthService.
    """
    access_token_ttl: timedelta = timedelta(minutes=15)
    refresh_token_ttl: timedelta = timedelta(days=7)
    code_ttl: timedelta = timedelta(minutes=10)
    inactivity_window: timedelta = timedelta(minutes=30)
    session_retention: timedelta = timedelta(days=30)
    max_failed_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=30)
    bcrypt_rounds: int = 12

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthPolicy":
        return cls(
            access_token_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_token_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            code_ttl=timedelta(minutes=settings.OTP_EXPIRE_MINUTES),
            inactivity_window=timedelta(minutes=settings.SESSION_INACTIVITY_MINUTES),
            session_retention=timedelta(days=settings.SESSION_RETENTION_DAYS),
            max_failed_attempts=settings.MAX_FAILED_LOGIN_ATTEMPTS,
            lockout_duration=timedelta(minutes=settings.LOCKOUT_MINUTES),
            bcrypt_rounds=settings.BCRYPT_ROUNDS,
        )


settings = Settings()
