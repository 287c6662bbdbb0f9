"""
Gatekeeper - Error Taxonomy

Every failure that leaves the authentication service is one of these.
Storage and library errors are mapped into this set by AuthService;
the HTTP layer translates them to status codes in app.py.

Security:
- Credential failures share one message to avoid account enumeration
- Only AccountLockedError discloses timing (remaining lock minutes)
"""

from typing import Optional


class AuthError(Exception):
    """Base class for all authentication errors."""
    status_code: int = 500
    error_code: str = "auth_error"

    def __init__(self, message: str = "Authentication error"):
        super().__init__(message)
        self.message = message


class ConflictError(AuthError):
    """Resource already exists (duplicate signup, already verified)."""
    status_code = 409
    error_code = "conflict"


class UnauthorizedError(AuthError):
    """Bad credentials, bad/expired token, unverified email."""
    status_code = 401
    error_code = "unauthorized"


class AccountLockedError(UnauthorizedError):
    """Too many consecutive failures; login is suspended for a while."""
    error_code = "account_locked"

    def __init__(self, retry_after_minutes: int, message: Optional[str] = None):
        self.retry_after_minutes = retry_after_minutes
        super().__init__(
            message
            or "Account is locked due to too many failed attempts. "
            f"Try again in {retry_after_minutes} minutes."
        )


class ValidationError(AuthError):
    """Bad or expired code, malformed input, disallowed transition."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(AuthError):
    """Missing or unowned account/session."""
    status_code = 404
    error_code = "not_found"


class ServiceFault(AuthError):
    """Unmapped internal failure; details are logged, never returned."""
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
