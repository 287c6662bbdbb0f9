"""
Gatekeeper - Authentication Service

Composes the credential store, one-time-code ledger, lockout guard,
token issuer, refresh token store and session registry into the
signup, login, step-up, refresh, logout and status-routing workflows.

Error handling:
- Every failure leaving this module is an AuthError subclass
- Credential mismatches always raise the same UnauthorizedError
- Storage errors are rolled back, logged and surfaced as ServiceFault
- Message delivery is best-effort and never undoes a state change
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional, Union
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session as DBSession, select

from gatekeeper.auth import codes, lockout, refresh_tokens, sessions
from gatekeeper.auth.delivery import (
    DispatchRequest,
    LoggingDispatcher,
    MessageDispatcher,
    MessagePurpose,
    mask_email,
)
from gatekeeper.auth.devices import RequestContext, parse_device
from gatekeeper.auth.models import (
    Account,
    AccountStatus,
    CodePurpose,
    ExternalIdentity,
    LogoutReason,
    RevocationReason,
    Role,
    TwoFactorMethod,
)
from gatekeeper.auth.password import burn_password_check, hash_password, verify_password
from gatekeeper.auth.schemas import AccountPublic, SessionInfo
from gatekeeper.auth.status import StatusDecision, check_status
from gatekeeper.auth.tokens import (
    InvalidTokenError,
    TokenClaims,
    TokenFamily,
    TokenIssuer,
    TokenPair,
)
from gatekeeper.clock import utcnow
from gatekeeper.config import AuthPolicy
from gatekeeper.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    ServiceFault,
    UnauthorizedError,
    ValidationError,
)


logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"

_CODE_MESSAGES = {
    CodePurpose.VERIFICATION: MessagePurpose.VERIFICATION,
    CodePurpose.SIGNIN: MessagePurpose.SIGNIN,
    CodePurpose.RESET: MessagePurpose.RESET,
}


@dataclass(frozen=True)
class StepUpChallenge:
    """Password accepted; a second factor is required before tokens."""
    email: str
    method: TwoFactorMethod
    requires_2fa: bool = True


@dataclass(frozen=True)
class LoginResult:
    account: AccountPublic
    access_token: str
    refresh_token: str
    session_id: UUID
    expires_in: int


@dataclass(frozen=True)
class StatusReport:
    account: AccountPublic
    decision: StatusDecision


class AuthenticatedAccount(BaseModel):
    """
    Represents a validated, authenticated caller.

    Available in route handlers via Depends(get_current_account).
    """
    account_id: UUID
    email: str
    role: Role
    session_id: UUID
    token_id: str  # jti for audit correlation


def sanitize_account(account: Account) -> AccountPublic:
    return AccountPublic.model_validate(account)


class AuthService:
    """
    Authentication orchestrator.

    Args:
        session_factory: Callable returning a new SQLModel session
        policy: Immutable TTL / lockout policy
        issuer: Token issuer (its TTLs should match the policy)
        dispatcher: Outbound message collaborator
        clock: Returns the current naive-UTC time
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        policy: AuthPolicy,
        issuer: TokenIssuer,
        dispatcher: Optional[MessageDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.policy = policy
        self.issuer = issuer
        self.dispatcher = dispatcher or LoggingDispatcher()
        self._clock = clock

    # ------------------------------------------------------------------
    # Signup and verification
    # ------------------------------------------------------------------

    async def signup(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Union[Role, str],
    ) -> AccountPublic:
        """
        Register a pending, unverified account and send a verification code.

        Raises:
            ConflictError: Email already registered
            ValidationError: Unknown role or unusable password
        """
        email = email.strip().lower()
        now = self._clock()
        try:
            role = Role(role)
        except ValueError as e:
            raise ValidationError(f"Unknown role: {role}") from e

        with self._db() as db:
            if self._find_account(db, email) is not None:
                raise ConflictError("User with this email already exists")

            try:
                password_hash = hash_password(password, rounds=self.policy.bcrypt_rounds)
            except ValueError as e:
                raise ValidationError(str(e)) from e

            account = Account(
                email=email,
                password_hash=password_hash,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=role,
                status=AccountStatus.PENDING,
                is_email_verified=False,
                is_profile_complete=False,
                created_at=now,
                updated_at=now,
            )
            db.add(account)
            try:
                db.commit()
            except IntegrityError as e:
                # Lost a race against a concurrent signup for the same email
                db.rollback()
                raise ConflictError("User with this email already exists") from e
            db.refresh(account)
            logger.info("Account %s registered with role %s", account.id, role.value)

            await self._send_code(db, account, CodePurpose.VERIFICATION, now)
            return sanitize_account(account)

    async def send_code(self, email: str, purpose: CodePurpose) -> None:
        """
        Issue and dispatch a fresh code of the given purpose.

        Sign-in codes are only issued by authenticate, after the password
        has been checked.

        Raises:
            ValidationError: Sign-in purpose requested
            NotFoundError: Unknown email
            ConflictError: Verification requested for a verified address
        """
        if purpose == CodePurpose.SIGNIN:
            raise ValidationError("Sign-in codes are sent after a password login")

        now = self._clock()
        with self._db() as db:
            account = self._require_account_by_email(db, email)
            if purpose == CodePurpose.VERIFICATION and account.is_email_verified:
                raise ConflictError("Email is already verified")
            await self._send_code(db, account, purpose, now)

    async def verify_email(
        self,
        email: str,
        code: str,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        """
        Spend a verification code, mark the email verified and log in.

        Raises:
            NotFoundError: Unknown email
            ConflictError: Already verified
            ValidationError: Bad or expired code
        """
        now = self._clock()
        with self._db() as db:
            account = self._require_account_by_email(db, email)
            if account.is_email_verified:
                raise ConflictError("Email is already verified")

            await codes.consume_code(db, account.email, CodePurpose.VERIFICATION, code, now)

            account.is_email_verified = True
            account.updated_at = now
            db.add(account)
            db.commit()
            db.refresh(account)
            logger.info("Email verified for account %s", account.id)

            await self._dispatch(DispatchRequest(
                to_email=account.email,
                purpose=MessagePurpose.WELCOME,
                recipient_name=account.full_name,
            ))
            return await self._complete_login(db, account, context, now)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> Union[StepUpChallenge, LoginResult]:
        """
        Primary credential check.

        Steps:
            1. Locked account -> AccountLockedError with remaining minutes
            2. Wrong password -> failure counted, generic UnauthorizedError
            3. Unverified email -> UnauthorizedError
            4. 2FA enabled -> code sent, StepUpChallenge returned
            5. Otherwise the login completes
        """
        email = email.strip().lower()
        now = self._clock()
        with self._db() as db:
            account = self._find_account(db, email)

            if account is None:
                burn_password_check(password)
                logger.info("Login failed: unknown email")
                raise UnauthorizedError(INVALID_CREDENTIALS)

            lockout.ensure_not_locked(account, now)

            if not verify_password(password, account.password_hash):
                lockout.register_failure(account, self.policy, now)
                db.add(account)
                db.commit()
                logger.info(
                    "Login failed for account %s (attempt %d)",
                    account.id, account.failed_login_attempts,
                )
                raise UnauthorizedError(INVALID_CREDENTIALS)

            if not account.is_email_verified:
                raise UnauthorizedError("Please verify your email before logging in")

            if account.is_two_factor_enabled:
                await self._send_code(db, account, CodePurpose.SIGNIN, now)
                return StepUpChallenge(email=account.email, method=account.two_factor_method)

            return await self._complete_login(db, account, context, now)

    async def complete_step_up(
        self,
        email: str,
        code: str,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        """
        Second factor: spend a sign-in code and complete the login.

        Wrong codes climb the same lockout ladder as wrong passwords.
        """
        email = email.strip().lower()
        now = self._clock()
        with self._db() as db:
            account = self._find_account(db, email)
            if account is None:
                raise UnauthorizedError(INVALID_CREDENTIALS)

            lockout.ensure_not_locked(account, now)

            if not account.is_email_verified:
                raise UnauthorizedError("Please verify your email before logging in")

            try:
                await codes.consume_code(db, account.email, CodePurpose.SIGNIN, code, now)
            except ValidationError:
                lockout.register_failure(account, self.policy, now)
                db.add(account)
                db.commit()
                logger.info("Step-up failed for account %s", account.id)
                raise

            return await self._complete_login(db, account, context, now)

    async def federated_login(
        self,
        provider: str,
        subject: str,
        email: str,
        first_name: str,
        last_name: str,
        role: Union[Role, str],
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        """
        Log in an identity already authenticated by an external provider.

        Resolution order: linked identity, then email (linking it), then a
        new passwordless account created together with its identity link.
        """
        email = email.strip().lower()
        now = self._clock()
        with self._db() as db:
            identity = db.exec(
                select(ExternalIdentity).where(
                    ExternalIdentity.provider == provider,
                    ExternalIdentity.subject == subject,
                )
            ).first()

            if identity is not None:
                account = db.get(Account, identity.account_id)
                if account is None:
                    raise NotFoundError("Account not found")
            else:
                account = self._find_account(db, email)
                if account is None:
                    try:
                        role = Role(role)
                    except ValueError as e:
                        raise ValidationError(f"Unknown role: {role}") from e
                    account = Account(
                        email=email,
                        password_hash=None,
                        first_name=first_name.strip(),
                        last_name=last_name.strip(),
                        role=role,
                        status=AccountStatus.PENDING,
                        is_email_verified=True,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(account)
                    db.flush()
                elif not account.is_email_verified:
                    # The provider has verified the address
                    account.is_email_verified = True
                    account.updated_at = now
                    db.add(account)

                db.add(ExternalIdentity(
                    account_id=account.id,
                    provider=provider,
                    subject=subject,
                    created_at=now,
                ))
                try:
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    raise ConflictError("Identity is already linked") from e
                db.refresh(account)
                logger.info("Linked %s identity to account %s", provider, account.id)

            lockout.ensure_not_locked(account, now)
            return await self._complete_login(db, account, context, now)

    async def _complete_login(
        self,
        db: DBSession,
        account: Account,
        context: Optional[RequestContext],
        now: datetime,
    ) -> LoginResult:
        """
        Issue credentials for an account that passed every check.

        The session must reference a durable refresh token row before the
        token pair (which embeds the session id) can be minted, so the row
        is reserved first and its hash written last.
        """
        context = context or RequestContext()

        lockout.reset_failures(account)
        account.last_login_at = now
        account.last_login_ip = context.ip_address
        account.updated_at = now
        db.add(account)
        db.commit()

        reserved = await refresh_tokens.reserve_refresh_token(
            db, account.id, now + self.policy.refresh_token_ttl, now
        )
        session = await sessions.create_session(
            db,
            account_id=account.id,
            refresh_token_id=reserved.id,
            inactivity_window=self.policy.inactivity_window,
            device=parse_device(context.user_agent),
            ip_address=context.ip_address,
            now=now,
        )
        pair = self.issuer.issue(account.id, account.email, account.role.value, session.id, now)
        await refresh_tokens.finalize_refresh_token(
            db, reserved, pair.refresh_token, pair.refresh_expires_at
        )
        db.refresh(account)

        logger.info("Login completed for account %s (session %s)", account.id, session.id)
        return LoginResult(
            account=sanitize_account(account),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            session_id=session.id,
            expires_in=pair.access_expires_in,
        )

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new pair (single-use rotation).

        The presented row is revoked with a compare-and-swap in the same
        commit that stores its successor and re-points the session.
        Presenting a token that was already rotated away ends every
        session of the account.

        Raises:
            UnauthorizedError: Bad signature, expired, unknown, reused,
                or the owning session has ended
        """
        try:
            claims = self.issuer.verify(refresh_token, TokenFamily.REFRESH)
        except InvalidTokenError as e:
            raise UnauthorizedError(INVALID_REFRESH_TOKEN) from e

        now = self._clock()
        account_id = claims.account_id
        with self._db() as db:
            account = db.get(Account, account_id)
            if account is None:
                raise UnauthorizedError(INVALID_REFRESH_TOKEN)

            row = await refresh_tokens.find_matching_token(
                db, account_id, refresh_token, now, include_revoked=True
            )
            if row is None:
                raise UnauthorizedError(INVALID_REFRESH_TOKEN)

            if row.is_revoked:
                if row.revoked_reason == RevocationReason.ROTATED:
                    await self._handle_reuse(db, account_id, now)
                raise UnauthorizedError(INVALID_REFRESH_TOKEN)

            session = None
            if claims.session_id is not None:
                session = await sessions.get_session(db, claims.session_id)
                if session is None or session.account_id != account_id:
                    raise UnauthorizedError(INVALID_REFRESH_TOKEN)
                if not session.is_active or sessions.has_timed_out(
                    session, self.policy.inactivity_window, now
                ):
                    if session.is_active:
                        sessions.end(session, LogoutReason.INACTIVITY_TIMEOUT, now)
                        db.add(session)
                    await refresh_tokens.revoke_refresh_token(
                        db, row.id, RevocationReason.SESSION_ENDED, now
                    )
                    raise UnauthorizedError("Session has ended, please log in again")

            pair = self.issuer.issue(
                account.id, account.email, account.role.value, claims.session_id, now
            )
            successor = refresh_tokens.build_refresh_token(
                account.id, pair.refresh_token, pair.refresh_expires_at, now
            )

            won = await refresh_tokens.revoke_if_active(
                db, row.id, RevocationReason.ROTATED, now, replaced_by=successor.id
            )
            if not won:
                # A concurrent refresh spent this token first
                db.rollback()
                await self._handle_reuse(db, account_id, now)
                raise UnauthorizedError(INVALID_REFRESH_TOKEN)

            db.add(successor)
            db.flush()
            if session is not None:
                session.refresh_token_id = successor.id
                sessions.touch(session, self.policy.inactivity_window, now)
                db.add(session)
            db.commit()

            logger.info("Rotated refresh token for account %s", account_id)
            return pair

    async def _handle_reuse(self, db: DBSession, account_id: UUID, now: datetime) -> None:
        logger.warning(
            "Refresh token reuse detected for account %s; ending all sessions",
            account_id,
        )
        await sessions.end_all_sessions(db, account_id, LogoutReason.SECURITY_CONCERN, now)
        await refresh_tokens.revoke_all_refresh_tokens(
            db, account_id, RevocationReason.REUSE_DETECTED, now
        )

    # ------------------------------------------------------------------
    # Logout and session management
    # ------------------------------------------------------------------

    async def logout(
        self,
        account_id: UUID,
        session_id: Optional[UUID],
        refresh_token: Optional[str] = None,
    ) -> None:
        """
        End the caller's session and revoke this device's refresh token.

        Only the token the session currently points at is revoked. A
        presented refresh token that belongs to a different session is
        logged and left alone.
        """
        now = self._clock()
        with self._db() as db:
            session = await sessions.get_session(db, session_id) if session_id else None
            if session is not None and session.account_id != account_id:
                session = None

            target = session.refresh_token_id if session is not None else None
            if session is not None:
                await sessions.end_session(db, session.id, LogoutReason.USER_LOGOUT, now)

            if refresh_token:
                row = await refresh_tokens.find_matching_token(db, account_id, refresh_token, now)
                if row is None or row.id != target:
                    # Never revoke another device's token from this session
                    logger.info(
                        "Logout for account %s presented a refresh token not bound to session %s",
                        account_id, session_id,
                    )

            if target is not None:
                await refresh_tokens.revoke_refresh_token(db, target, RevocationReason.LOGOUT, now)

            logger.info("Account %s logged out (session %s)", account_id, session_id)

    async def logout_all_devices(self, account_id: UUID) -> int:
        """
        End every session and revoke every refresh token of the account.

        Returns:
            Number of sessions ended
        """
        now = self._clock()
        with self._db() as db:
            ended = await sessions.end_all_sessions(db, account_id, LogoutReason.FORCED_LOGOUT, now)
            revoked = await refresh_tokens.revoke_all_refresh_tokens(
                db, account_id, RevocationReason.LOGOUT_ALL, now
            )
            logger.info(
                "Account %s logged out everywhere (%d sessions, %d tokens)",
                account_id, ended, revoked,
            )
            return ended

    async def terminate_session(
        self,
        account_id: UUID,
        session_id: UUID,
        current_session_id: Optional[UUID],
    ) -> None:
        """
        End one of the account's other sessions.

        Raises:
            NotFoundError: Missing or owned by another account
            ValidationError: Already terminal, or the caller's own session
        """
        now = self._clock()
        with self._db() as db:
            session = await sessions.get_session(db, session_id)
            if session is None or session.account_id != account_id:
                raise NotFoundError("Session not found")
            if not session.is_active:
                raise ValidationError("Session is already terminated")
            if current_session_id is not None and session.id == current_session_id:
                raise ValidationError("Cannot terminate current session. Use logout instead.")

            await sessions.end_session(db, session.id, LogoutReason.FORCED_LOGOUT, now)
            await refresh_tokens.revoke_refresh_token(
                db, session.refresh_token_id, RevocationReason.SESSION_ENDED, now
            )
            logger.info("Account %s terminated session %s", account_id, session_id)

    async def terminate_other_sessions(
        self,
        account_id: UUID,
        current_session_id: Optional[UUID],
    ) -> int:
        """
        End every session except the caller's.

        Returns:
            Number of sessions ended
        """
        if current_session_id is None:
            raise ValidationError("Current session not found")

        now = self._clock()
        with self._db() as db:
            token_ids = await sessions.end_other_sessions(
                db, account_id, current_session_id, LogoutReason.FORCED_LOGOUT, now
            )
            for token_id in token_ids:
                await refresh_tokens.revoke_if_active(
                    db, token_id, RevocationReason.SESSION_ENDED, now
                )
            db.commit()
            logger.info("Account %s terminated %d other sessions", account_id, len(token_ids))
            return len(token_ids)

    async def list_sessions(
        self,
        account_id: UUID,
        current_session_id: Optional[UUID] = None,
    ) -> list[SessionInfo]:
        with self._db() as db:
            active = await sessions.get_active_sessions(db, account_id)
            return [
                SessionInfo.model_validate(s).model_copy(
                    update={"is_current": s.id == current_session_id}
                )
                for s in active
            ]

    async def authenticate_session(self, claims: TokenClaims) -> AuthenticatedAccount:
        """
        Validate the session named in an access token and record activity.

        Raises:
            UnauthorizedError: Unknown account, session-less token, or a
                session that is missing, ended or idle too long
        """
        if claims.session_id is None:
            raise UnauthorizedError("Token is not bound to a session")

        now = self._clock()
        with self._db() as db:
            account = db.get(Account, claims.account_id)
            if account is None:
                raise UnauthorizedError("Account not found")

            session = await sessions.validate_session(
                db, claims.session_id, account.id, self.policy.inactivity_window, now
            )
            if session is None:
                raise UnauthorizedError("Session expired or invalid")

            return AuthenticatedAccount(
                account_id=account.id,
                email=account.email,
                role=account.role,
                session_id=session.id,
                token_id=claims.jti,
            )

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        now = self._clock()
        with self._db() as db:
            account = self._require_account_by_email(db, email)
            await self._send_code(db, account, CodePurpose.RESET, now)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        """
        Spend a reset code and set a new password.

        All refresh tokens are revoked and all sessions ended.
        """
        now = self._clock()
        with self._db() as db:
            account = self._require_account_by_email(db, email)
            await codes.consume_code(db, account.email, CodePurpose.RESET, code, now)
            self._set_password(account, new_password, now)
            lockout.reset_failures(account)
            db.add(account)
            db.commit()
            await self._revoke_everything(db, account, now)
            logger.info("Password reset for account %s", account.id)

    async def change_password(
        self,
        account_id: UUID,
        current_password: str,
        new_password: str,
    ) -> None:
        """
        Raises:
            NotFoundError: Unknown account
            UnauthorizedError: Current password is wrong
            ValidationError: New password equals the current one
        """
        now = self._clock()
        with self._db() as db:
            account = self._require_account(db, account_id)
            if not verify_password(current_password, account.password_hash):
                raise UnauthorizedError("Current password is incorrect")
            if verify_password(new_password, account.password_hash):
                raise ValidationError("New password must be different from current password")

            self._set_password(account, new_password, now)
            db.add(account)
            db.commit()
            await self._revoke_everything(db, account, now)
            logger.info("Password changed for account %s", account.id)

    def _set_password(self, account: Account, new_password: str, now: datetime) -> None:
        try:
            account.password_hash = hash_password(new_password, rounds=self.policy.bcrypt_rounds)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        account.updated_at = now

    async def _revoke_everything(self, db: DBSession, account: Account, now: datetime) -> None:
        await refresh_tokens.revoke_all_refresh_tokens(
            db, account.id, RevocationReason.PASSWORD_CHANGED, now
        )
        await sessions.end_all_sessions(db, account.id, LogoutReason.PASSWORD_CHANGED, now)
        await self._dispatch(DispatchRequest(
            to_email=account.email,
            purpose=MessagePurpose.PASSWORD_CHANGED,
            recipient_name=account.full_name,
        ))

    # ------------------------------------------------------------------
    # Account status
    # ------------------------------------------------------------------

    async def get_account(self, account_id: UUID) -> AccountPublic:
        with self._db() as db:
            return sanitize_account(self._require_account(db, account_id))

    async def check_status(self, account_id: UUID) -> StatusReport:
        with self._db() as db:
            account = self._require_account(db, account_id)
            return StatusReport(account=sanitize_account(account), decision=check_status(account))

    async def complete_profile(self, account_id: UUID) -> StatusReport:
        now = self._clock()
        with self._db() as db:
            account = self._require_account(db, account_id)
            account.is_profile_complete = True
            account.updated_at = now
            db.add(account)
            db.commit()
            db.refresh(account)
            return StatusReport(account=sanitize_account(account), decision=check_status(account))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep(self) -> dict[str, int]:
        """
        Periodic maintenance: end idle sessions, then purge terminal
        sessions past retention, dead codes and unreferenced expired tokens.
        """
        now = self._clock()
        with self._db() as db:
            report = {
                "sessions_expired": await sessions.expire_inactive(
                    db, self.policy.inactivity_window, now
                ),
                "sessions_purged": await sessions.purge_terminated_sessions(
                    db, self.policy.session_retention, now
                ),
                "codes_purged": await codes.purge_expired_codes(db, now),
                "tokens_purged": await refresh_tokens.purge_expired_tokens(db, now),
            }
        if any(report.values()):
            logger.info("Sweep complete: %s", report)
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _db(self) -> Iterator[DBSession]:
        db = self._session_factory()
        try:
            yield db
        except AuthError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Storage failure")
            raise ServiceFault() from e
        finally:
            db.close()

    @staticmethod
    def _find_account(db: DBSession, email: str) -> Optional[Account]:
        return db.exec(select(Account).where(Account.email == email.strip().lower())).first()

    def _require_account_by_email(self, db: DBSession, email: str) -> Account:
        account = self._find_account(db, email)
        if account is None:
            raise NotFoundError("User not found")
        return account

    @staticmethod
    def _require_account(db: DBSession, account_id: UUID) -> Account:
        account = db.get(Account, account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    async def _send_code(
        self,
        db: DBSession,
        account: Account,
        purpose: CodePurpose,
        now: datetime,
    ) -> None:
        record = await codes.issue_code(db, account.email, purpose, self.policy.code_ttl, now)
        await self._dispatch(DispatchRequest(
            to_email=account.email,
            purpose=_CODE_MESSAGES[purpose],
            recipient_name=account.full_name,
            code=record.code,
        ))

    async def _dispatch(self, request: DispatchRequest) -> bool:
        """Hand a message to the dispatcher; failures are logged, not raised."""
        try:
            await self.dispatcher.dispatch(request)
        except Exception as e:
            logger.error(
                "Failed to dispatch %s message to %s: %s",
                request.purpose.value, mask_email(request.to_email), e,
            )
            return False
        return True
