"""
Gatekeeper - Security Dependencies

FastAPI dependencies for authentication.
Implements hybrid JWT + session validation.

Usage:
    @router.get("/protected")
    async def protected_route(account: AuthenticatedAccount = Depends(get_current_account)):
        ...

Security:
- Every protected request validates both the JWT AND its session
- The session id is taken from the signed `sid` claim, never a header
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from gatekeeper.auth.devices import RequestContext
from gatekeeper.auth.service import AuthService, AuthenticatedAccount
from gatekeeper.auth.tokens import InvalidTokenError, TokenFamily
from gatekeeper.errors import UnauthorizedError


# HTTP Bearer scheme for JWT extraction
security = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    """The AuthService instance built by create_app."""
    return request.app.state.auth_service


def get_request_context(request: Request) -> RequestContext:
    """Client IP (first X-Forwarded-For hop, else peer) and User-Agent."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    elif request.client:
        ip_address = request.client.host
    else:
        ip_address = None

    return RequestContext(
        user_agent=request.headers.get("User-Agent"),
        ip_address=ip_address,
    )


async def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: AuthService = Depends(get_auth_service),
) -> AuthenticatedAccount:
    """
    Validate request authentication and return the current account.

    This dependency performs:
    1. Extract JWT from Authorization header
    2. Validate JWT signature, family and expiry
    3. Validate the session named by its `sid` claim (and record activity)

    Raises:
        UnauthorizedError: Missing/invalid token, or session ended or idle
    """
    if not credentials:
        raise UnauthorizedError("Missing authentication token")

    try:
        claims = service.issuer.verify(credentials.credentials, TokenFamily.ACCESS)
    except InvalidTokenError as e:
        raise UnauthorizedError("Invalid or expired token") from e

    return await service.authenticate_session(claims)
