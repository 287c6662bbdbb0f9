"""
Gatekeeper - Authentication Service Test Suite

Workflow tests for AuthService against an in-memory database:
- Signup, verification and login (with and without 2FA)
- Lockout ladder
- Refresh rotation and reuse detection
- Logout, session management and password changes
- Federated login, status routing and the maintenance sweep

Run with: pytest tests/test_service.py -v
"""

from uuid import uuid4

import pytest
from sqlmodel import select

from gatekeeper.auth import codes, refresh_tokens
from gatekeeper.auth.delivery import MessagePurpose
from gatekeeper.auth.devices import RequestContext
from gatekeeper.auth.models import (
    Account,
    AccountStatus,
    CodePurpose,
    ExternalIdentity,
    LogoutReason,
    RefreshToken,
    RevocationReason,
    Role,
    Session,
)
from gatekeeper.auth.service import LoginResult, StepUpChallenge
from gatekeeper.auth.status import Redirect
from gatekeeper.auth.tokens import TokenFamily
from gatekeeper.errors import (
    AccountLockedError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from tests.conftest import TEST_PASSWORD, make_account


CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
CONTEXT = RequestContext(user_agent=CHROME_UA, ip_address="203.0.113.7")


def _fresh(db):
    db.expire_all()
    return db


def _active_sessions(db, account_id):
    return _fresh(db).exec(
        select(Session).where(Session.account_id == account_id, Session.is_active == True)
    ).all()


def _unrevoked_tokens(db, account_id):
    return _fresh(db).exec(
        select(RefreshToken).where(
            RefreshToken.account_id == account_id, RefreshToken.is_revoked == False
        )
    ).all()


async def _login(service, email, password=TEST_PASSWORD) -> LoginResult:
    result = await service.authenticate(email, password, CONTEXT)
    assert isinstance(result, LoginResult)
    return result


# =============================================================================
# SIGNUP AND VERIFICATION
# =============================================================================

class TestSignup:
    """Account registration and email verification."""

    async def test_signup_then_two_factor_login(self, service, dispatcher, db_session):
        """Full journey: pending signup, unverified refusal, 2FA login."""
        account = await service.signup("a@x.com", "P@ssw0rd!", "A", "B", "teacher")

        assert account.status == AccountStatus.PENDING
        assert account.is_email_verified is False
        assert not hasattr(account, "password_hash")

        with pytest.raises(UnauthorizedError):
            await service.authenticate("a@x.com", "P@ssw0rd!")

        row = db_session.get(Account, account.id)
        row.is_email_verified = True
        db_session.add(row)
        db_session.commit()

        challenge = await service.authenticate("a@x.com", "P@ssw0rd!")
        assert isinstance(challenge, StepUpChallenge)
        assert challenge.requires_2fa is True

        code = dispatcher.last_code("a@x.com", MessagePurpose.SIGNIN)
        result = await service.complete_step_up("a@x.com", code, CONTEXT)

        assert result.access_token
        assert result.refresh_token
        session = _fresh(db_session).get(Session, result.session_id)
        assert session.is_active is True
        assert session.account_id == account.id

    async def test_duplicate_email_conflicts(self, service):
        await service.signup("dup@example.com", TEST_PASSWORD, "Dup", "One", Role.SCHOOL)

        with pytest.raises(ConflictError):
            await service.signup("DUP@example.com", TEST_PASSWORD, "Dup", "Two", Role.SCHOOL)

    async def test_delivery_failure_does_not_undo_signup(self, service, dispatcher, db_session):
        dispatcher.fail = True

        account = await service.signup("quiet@example.com", TEST_PASSWORD, "Qu", "Iet", Role.SUPPLIER)

        assert db_session.get(Account, account.id) is not None

    async def test_unknown_role_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.signup("r@example.com", TEST_PASSWORD, "Ro", "Le", "astronaut")

    async def test_verify_email_logs_in(self, service, dispatcher):
        await service.signup("v@example.com", TEST_PASSWORD, "Ve", "Rify", Role.TEACHER)
        code = dispatcher.last_code("v@example.com", MessagePurpose.VERIFICATION)

        result = await service.verify_email("v@example.com", code, CONTEXT)

        assert result.account.is_email_verified is True
        assert any(m.purpose == MessagePurpose.WELCOME for m in dispatcher.sent)

        with pytest.raises(ConflictError):
            await service.verify_email("v@example.com", code)

    async def test_resend_for_verified_email_conflicts(self, service, verified_account):
        with pytest.raises(ConflictError):
            await service.send_code(verified_account.email, CodePurpose.VERIFICATION)

    async def test_send_code_unknown_email(self, service):
        with pytest.raises(NotFoundError):
            await service.send_code("nobody@example.com", CodePurpose.VERIFICATION)

    async def test_signin_codes_cannot_be_requested(self, service, dispatcher, two_factor_account):
        with pytest.raises(ValidationError):
            await service.send_code(two_factor_account.email, CodePurpose.SIGNIN)

        assert dispatcher.sent == []


# =============================================================================
# LOGIN AND LOCKOUT
# =============================================================================

class TestLogin:
    """Primary authentication, step-up and the lockout ladder."""

    async def test_login_without_two_factor(self, service, verified_account, db_session):
        result = await _login(service, verified_account.email)

        session = _fresh(db_session).get(Session, result.session_id)
        assert session.browser == "Chrome"
        assert session.ip_address == "203.0.113.7"
        assert result.account.last_login_at is not None

    async def test_unknown_and_wrong_password_look_the_same(self, service, verified_account):
        with pytest.raises(UnauthorizedError) as unknown:
            await service.authenticate("ghost@example.com", TEST_PASSWORD)
        with pytest.raises(UnauthorizedError) as wrong:
            await service.authenticate(verified_account.email, "Wr0ng!pass")

        assert unknown.value.message == wrong.value.message

    async def test_sixth_attempt_is_locked_out(self, service, verified_account):
        for _ in range(5):
            with pytest.raises(UnauthorizedError) as excinfo:
                await service.authenticate(verified_account.email, "Wr0ng!pass")
            assert not isinstance(excinfo.value, AccountLockedError)

        with pytest.raises(AccountLockedError) as locked:
            await service.authenticate(verified_account.email, TEST_PASSWORD)

        assert 0 <= locked.value.retry_after_minutes <= 30

    async def test_success_resets_failure_counter(self, service, verified_account, db_session):
        for _ in range(4):
            with pytest.raises(UnauthorizedError):
                await service.authenticate(verified_account.email, "Wr0ng!pass")

        await _login(service, verified_account.email)

        account = _fresh(db_session).get(Account, verified_account.id)
        assert account.failed_login_attempts == 0
        assert account.locked_until is None

    async def test_lock_lifts_after_window(self, service, verified_account, clock):
        for _ in range(5):
            with pytest.raises(UnauthorizedError):
                await service.authenticate(verified_account.email, "Wr0ng!pass")

        clock.advance(minutes=31)

        await _login(service, verified_account.email)

    async def test_wrong_step_up_code_counts_as_failure(
        self, service, dispatcher, two_factor_account, db_session
    ):
        await service.authenticate(two_factor_account.email, TEST_PASSWORD)
        code = dispatcher.last_code(two_factor_account.email, MessagePurpose.SIGNIN)
        wrong = "000000" if code != "000000" else "111111"

        with pytest.raises(ValidationError):
            await service.complete_step_up(two_factor_account.email, wrong)

        account = _fresh(db_session).get(Account, two_factor_account.id)
        assert account.failed_login_attempts == 1

    async def test_step_up_code_is_single_use(self, service, dispatcher, two_factor_account):
        await service.authenticate(two_factor_account.email, TEST_PASSWORD)
        code = dispatcher.last_code(two_factor_account.email, MessagePurpose.SIGNIN)

        await service.complete_step_up(two_factor_account.email, code)

        with pytest.raises(ValidationError):
            await service.complete_step_up(two_factor_account.email, code)

    async def test_step_up_requires_verified_email(self, service, policy, db_session):
        account = make_account(
            db_session, email="pending@example.com", verified=False, two_factor=True
        )
        record = await codes.issue_code(db_session, account.email, CodePurpose.SIGNIN, policy.code_ttl)

        with pytest.raises(UnauthorizedError):
            await service.complete_step_up(account.email, record.code)

        assert _active_sessions(db_session, account.id) == []


# =============================================================================
# REFRESH ROTATION
# =============================================================================

class TestRefresh:
    """Single-use rotation and reuse detection."""

    async def test_rotation_repoints_session(self, service, verified_account, db_session):
        first = await _login(service, verified_account.email)

        pair = await service.refresh(first.refresh_token)

        assert pair.refresh_token != first.refresh_token
        claims = service.issuer.verify(pair.access_token, TokenFamily.ACCESS)
        assert claims.session_id == first.session_id

        db = _fresh(db_session)
        session = db.get(Session, first.session_id)
        current = db.get(RefreshToken, session.refresh_token_id)
        assert current.is_revoked is False
        predecessor = db.exec(
            select(RefreshToken).where(RefreshToken.replaced_by == current.id)
        ).one()
        assert predecessor.revoked_reason == RevocationReason.ROTATED

    async def test_consumed_token_never_works_again(self, service, verified_account):
        first = await _login(service, verified_account.email)
        await service.refresh(first.refresh_token)

        with pytest.raises(UnauthorizedError):
            await service.refresh(first.refresh_token)
        with pytest.raises(UnauthorizedError):
            await service.refresh(first.refresh_token)

    async def test_reuse_ends_every_session(self, service, verified_account, db_session):
        first = await _login(service, verified_account.email)
        other = await _login(service, verified_account.email)
        rotated = await service.refresh(first.refresh_token)

        with pytest.raises(UnauthorizedError):
            await service.refresh(first.refresh_token)

        assert _active_sessions(db_session, verified_account.id) == []
        assert _unrevoked_tokens(db_session, verified_account.id) == []
        ended = _fresh(db_session).get(Session, other.session_id)
        assert ended.logout_reason == LogoutReason.SECURITY_CONCERN

        with pytest.raises(UnauthorizedError):
            await service.refresh(rotated.refresh_token)

    async def test_losing_a_concurrent_refresh_ends_every_session(
        self, service, verified_account, db_session, monkeypatch
    ):
        first = await _login(service, verified_account.email)
        other = await _login(service, verified_account.email)
        real_revoke = refresh_tokens.revoke_if_active
        raced = []

        async def rotated_elsewhere_first(db, token_id, reason, now=None, replaced_by=None):
            # A parallel request spends the same token between lookup and swap
            if reason == RevocationReason.ROTATED and not raced:
                raced.append(token_id)
                await real_revoke(db, token_id, RevocationReason.ROTATED, now)
                db.commit()
            return await real_revoke(db, token_id, reason, now, replaced_by)

        monkeypatch.setattr(refresh_tokens, "revoke_if_active", rotated_elsewhere_first)

        with pytest.raises(UnauthorizedError):
            await service.refresh(first.refresh_token)

        assert len(raced) == 1
        assert _active_sessions(db_session, verified_account.id) == []
        assert _unrevoked_tokens(db_session, verified_account.id) == []
        db = _fresh(db_session)
        for session_id in (first.session_id, other.session_id):
            assert db.get(Session, session_id).logout_reason == LogoutReason.SECURITY_CONCERN
        survivor = db.get(RefreshToken, db.get(Session, other.session_id).refresh_token_id)
        assert survivor.revoked_reason == RevocationReason.REUSE_DETECTED

    async def test_access_token_is_not_a_refresh_token(self, service, verified_account):
        result = await _login(service, verified_account.email)

        with pytest.raises(UnauthorizedError):
            await service.refresh(result.access_token)

    async def test_refresh_after_idle_timeout(self, service, verified_account, clock, db_session):
        result = await _login(service, verified_account.email)
        clock.advance(minutes=31)

        with pytest.raises(UnauthorizedError):
            await service.refresh(result.refresh_token)

        session = _fresh(db_session).get(Session, result.session_id)
        assert session.is_active is False
        assert session.logout_reason == LogoutReason.INACTIVITY_TIMEOUT


# =============================================================================
# LOGOUT AND SESSION MANAGEMENT
# =============================================================================

class TestLogout:

    async def test_logout_revokes_exact_token(self, service, verified_account, db_session):
        laptop = await _login(service, verified_account.email)
        phone = await _login(service, verified_account.email)

        await service.logout(verified_account.id, laptop.session_id, laptop.refresh_token)

        session = _fresh(db_session).get(Session, laptop.session_id)
        assert session.logout_reason == LogoutReason.USER_LOGOUT
        with pytest.raises(UnauthorizedError):
            await service.refresh(laptop.refresh_token)

        # The other device is untouched
        await service.refresh(phone.refresh_token)

    async def test_logout_leaves_other_devices_token_alone(self, service, verified_account):
        laptop = await _login(service, verified_account.email)
        phone = await _login(service, verified_account.email)

        await service.logout(verified_account.id, laptop.session_id, phone.refresh_token)

        with pytest.raises(UnauthorizedError):
            await service.refresh(laptop.refresh_token)
        await service.refresh(phone.refresh_token)

    async def test_logout_without_token_revokes_session_token(self, service, verified_account):
        result = await _login(service, verified_account.email)

        await service.logout(verified_account.id, result.session_id)

        with pytest.raises(UnauthorizedError):
            await service.refresh(result.refresh_token)

    async def test_logout_all_devices(self, service, verified_account, db_session):
        for _ in range(3):
            await _login(service, verified_account.email)

        ended = await service.logout_all_devices(verified_account.id)

        assert ended == 3
        assert _active_sessions(db_session, verified_account.id) == []
        assert _unrevoked_tokens(db_session, verified_account.id) == []


class TestSessionManagement:

    async def test_list_sessions_flags_current(self, service, verified_account):
        first = await _login(service, verified_account.email)
        await _login(service, verified_account.email)

        listed = await service.list_sessions(verified_account.id, first.session_id)

        assert len(listed) == 2
        assert [s.id for s in listed if s.is_current] == [first.session_id]

    async def test_cannot_terminate_current_session(self, service, verified_account):
        result = await _login(service, verified_account.email)

        with pytest.raises(ValidationError):
            await service.terminate_session(verified_account.id, result.session_id, result.session_id)

    async def test_cannot_terminate_foreign_session(self, service, verified_account, db_session):
        stranger = make_account(db_session, email="stranger@example.com")
        theirs = await _login(service, stranger.email)

        with pytest.raises(NotFoundError):
            await service.terminate_session(verified_account.id, theirs.session_id, None)

    async def test_terminate_other_device(self, service, verified_account):
        mine = await _login(service, verified_account.email)
        other = await _login(service, verified_account.email)

        await service.terminate_session(verified_account.id, other.session_id, mine.session_id)

        with pytest.raises(UnauthorizedError):
            await service.refresh(other.refresh_token)
        with pytest.raises(ValidationError):
            await service.terminate_session(verified_account.id, other.session_id, mine.session_id)

    async def test_terminate_other_sessions(self, service, verified_account, db_session):
        mine = await _login(service, verified_account.email)
        await _login(service, verified_account.email)
        await _login(service, verified_account.email)

        count = await service.terminate_other_sessions(verified_account.id, mine.session_id)

        assert count == 2
        remaining = _active_sessions(db_session, verified_account.id)
        assert [s.id for s in remaining] == [mine.session_id]
        assert len(_unrevoked_tokens(db_session, verified_account.id)) == 1

    async def test_authenticate_session_after_logout(self, service, verified_account):
        result = await _login(service, verified_account.email)
        claims = service.issuer.verify(result.access_token, TokenFamily.ACCESS)

        authenticated = await service.authenticate_session(claims)
        assert authenticated.session_id == result.session_id

        await service.logout(verified_account.id, result.session_id)

        with pytest.raises(UnauthorizedError):
            await service.authenticate_session(claims)

    async def test_activity_keeps_session_alive(self, service, verified_account, clock):
        result = await _login(service, verified_account.email)
        claims = service.issuer.verify(result.access_token, TokenFamily.ACCESS)

        for _ in range(3):
            clock.advance(minutes=20)
            await service.authenticate_session(claims)

        clock.advance(minutes=31)
        with pytest.raises(UnauthorizedError):
            await service.authenticate_session(claims)


# =============================================================================
# PASSWORDS
# =============================================================================

class TestPasswords:

    async def test_reset_password_ends_sessions(self, service, dispatcher, verified_account, db_session):
        await _login(service, verified_account.email)
        await service.request_password_reset(verified_account.email)
        code = dispatcher.last_code(verified_account.email, MessagePurpose.RESET)

        await service.reset_password(verified_account.email, code, "N3w!Passw0rd")

        assert _active_sessions(db_session, verified_account.id) == []
        assert _unrevoked_tokens(db_session, verified_account.id) == []
        with pytest.raises(UnauthorizedError):
            await service.authenticate(verified_account.email, TEST_PASSWORD)
        await _login(service, verified_account.email, "N3w!Passw0rd")

    async def test_reset_with_wrong_code(self, service, verified_account):
        await service.request_password_reset(verified_account.email)

        with pytest.raises(ValidationError):
            await service.reset_password(verified_account.email, "abcdef", "N3w!Passw0rd")

    async def test_change_password(self, service, verified_account, db_session):
        result = await _login(service, verified_account.email)

        with pytest.raises(UnauthorizedError):
            await service.change_password(verified_account.id, "Wr0ng!pass", "N3w!Passw0rd")
        with pytest.raises(ValidationError):
            await service.change_password(verified_account.id, TEST_PASSWORD, TEST_PASSWORD)

        await service.change_password(verified_account.id, TEST_PASSWORD, "N3w!Passw0rd")

        session = _fresh(db_session).get(Session, result.session_id)
        assert session.logout_reason == LogoutReason.PASSWORD_CHANGED
        await _login(service, verified_account.email, "N3w!Passw0rd")


# =============================================================================
# FEDERATED LOGIN
# =============================================================================

class TestFederatedLogin:

    async def test_creates_passwordless_account(self, service, db_session):
        result = await service.federated_login(
            "google", "sub-123", "fed@example.com", "Fed", "User", Role.RECRUITER, CONTEXT
        )

        assert result.account.is_email_verified is True
        account = _fresh(db_session).get(Account, result.account.id)
        assert account.password_hash is None
        identity = db_session.exec(select(ExternalIdentity)).one()
        assert identity.account_id == account.id

        with pytest.raises(UnauthorizedError):
            await service.authenticate("fed@example.com", "")

    async def test_same_subject_reuses_account(self, service):
        first = await service.federated_login(
            "google", "sub-123", "fed@example.com", "Fed", "User", Role.RECRUITER
        )
        second = await service.federated_login(
            "google", "sub-123", "fed@example.com", "Fed", "User", Role.RECRUITER
        )

        assert first.account.id == second.account.id
        assert first.session_id != second.session_id

    async def test_links_existing_account_by_email(self, service, verified_account, db_session):
        result = await service.federated_login(
            "google", "sub-9", verified_account.email, "Test", "User", Role.TEACHER
        )

        assert result.account.id == verified_account.id
        assert len(_fresh(db_session).exec(select(ExternalIdentity)).all()) == 1


# =============================================================================
# STATUS AND MAINTENANCE
# =============================================================================

class TestStatusAndSweep:

    async def test_status_follows_onboarding(self, service, verified_account):
        report = await service.check_status(verified_account.id)
        assert report.decision.redirect_to == Redirect.COMPLETE_PROFILE

        report = await service.complete_profile(verified_account.id)
        assert report.account.is_profile_complete is True
        assert report.decision.redirect_to == Redirect.KYC_SUBMISSION

    async def test_status_unknown_account(self, service):
        with pytest.raises(NotFoundError):
            await service.check_status(uuid4())

    async def test_sweep_is_idempotent(self, service, verified_account, clock):
        await _login(service, verified_account.email)
        clock.advance(minutes=31)

        first = await service.sweep()
        second = await service.sweep()

        assert first["sessions_expired"] == 1
        assert second["sessions_expired"] == 0

    async def test_sweep_purges_after_retention(self, service, verified_account, clock):
        result = await _login(service, verified_account.email)
        await service.logout(verified_account.id, result.session_id)
        clock.advance(days=31)

        report = await service.sweep()

        assert report["sessions_purged"] == 1
        assert report["tokens_purged"] >= 1
