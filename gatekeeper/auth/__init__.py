"""
Gatekeeper - Authentication Package

Authentication with:
- Hybrid JWT + server-side sessions
- bcrypt password hashing
- Single-use rotating refresh tokens with reuse detection
- Email one-time codes for verification, 2FA and password reset
"""

from gatekeeper.auth.models import Account, Session, Role
from gatekeeper.auth.dependencies import get_current_account
from gatekeeper.auth.service import AuthService, AuthenticatedAccount

__all__ = [
    "Account",
    "Session",
    "Role",
    "AuthService",
    "AuthenticatedAccount",
    "get_current_account",
]
