"""
Gatekeeper - JWT Token Issuer

Mints and verifies access/refresh token pairs. Both carry:
- Account ID (sub), email and role
- Session ID (sid), when the pair belongs to a device session
- Unique token ID (jti) so no two tokens are byte-identical
- Token family (typ) so an access token is never accepted as refresh

Security:
- Short-lived access tokens (15 minutes default)
- Long-lived refresh tokens (7 days default), stored server-side as hashes
- Access and refresh tokens use distinct signing keys
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID

from jose import jwt, JWTError, ExpiredSignatureError
from pydantic import BaseModel, Field

from gatekeeper.clock import utcnow
from gatekeeper.config import Settings, AuthPolicy


class TokenFamily(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class InvalidTokenError(Exception):
    """Raised when JWT validation fails."""
    pass


class TokenSignatureError(InvalidTokenError):
    """Signature, issuer, audience or family check failed."""
    pass


class TokenExpiredError(InvalidTokenError):
    """Token is well-formed but past its exp claim."""
    pass


class TokenClaims(BaseModel):
    """
    Decoded JWT payload.

    Attributes:
        sub: Account ID
        email: Account email at issue time
        role: Account role at issue time
        sid: Session ID (absent for session-less tokens)
        jti: Unique token ID
        typ: Token family
    """
    sub: str = Field(..., description="Account ID")
    email: str
    role: str
    sid: Optional[str] = Field(default=None, description="Session ID")
    jti: str
    typ: TokenFamily
    exp: datetime
    iat: datetime

    @property
    def account_id(self) -> UUID:
        return UUID(self.sub)

    @property
    def session_id(self) -> Optional[UUID]:
        return UUID(self.sid) if self.sid else None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_at: datetime


class TokenIssuer:
    """
    Stateless token minting and verification.

    Example:
        >>> issuer = TokenIssuer("a-secret", "r-secret")
        >>> pair = issuer.issue(account_id, "a@x.com", "teacher", session_id)
        >>> issuer.verify(pair.refresh_token, TokenFamily.REFRESH).sid
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        issuer: str = "gatekeeper",
        audience: str = "gatekeeper-users",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh tokens must use distinct signing keys")
        self._secrets = {
            TokenFamily.ACCESS: access_secret,
            TokenFamily.REFRESH: refresh_secret,
        }
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings, policy: AuthPolicy) -> "TokenIssuer":
        return cls(
            access_secret=settings.ACCESS_TOKEN_SECRET,
            refresh_secret=settings.REFRESH_TOKEN_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            access_ttl=policy.access_token_ttl,
            refresh_ttl=policy.refresh_token_ttl,
        )

    def issue(
        self,
        account_id: UUID,
        email: str,
        role: str,
        session_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        """
        Mint an access/refresh pair with identical identity claims.

        Returns:
            TokenPair with both encoded tokens and their lifetimes
        """
        now = now or utcnow()
        claims = {
            "sub": str(account_id),
            "email": email,
            "role": role,
        }
        if session_id is not None:
            claims["sid"] = str(session_id)

        refresh_expires_at = now + self.refresh_ttl
        access_token = self._encode(claims, TokenFamily.ACCESS, now, now + self.access_ttl)
        refresh_token = self._encode(claims, TokenFamily.REFRESH, now, refresh_expires_at)

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_at=refresh_expires_at,
        )

    def verify(self, token: str, family: TokenFamily) -> TokenClaims:
        """
        Verify and decode a token of the given family.

        Raises:
            TokenExpiredError: Signature valid but token expired
            TokenSignatureError: Anything else (bad signature, wrong family,
                wrong issuer/audience, malformed)
        """
        try:
            payload = jwt.decode(
                token,
                self._secrets[family],
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as e:
            raise TokenExpiredError(f"{family.value} token expired") from e
        except JWTError as e:
            raise TokenSignatureError(f"Token validation failed: {str(e)}") from e

        if payload.get("typ") != family.value:
            raise TokenSignatureError(f"Expected a {family.value} token")

        try:
            return TokenClaims(**payload)
        except ValueError as e:
            raise TokenSignatureError(f"Malformed token claims: {str(e)}") from e

    def _encode(
        self,
        claims: dict,
        family: TokenFamily,
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        payload = {
            **claims,
            "jti": secrets.token_hex(16),
            "typ": family.value,
            "iat": issued_at,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(payload, self._secrets[family], algorithm=self.algorithm)
