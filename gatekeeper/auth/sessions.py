"""
Gatekeeper - Session Registry

Server-side record of every logged-in device.
Sessions enable immediate revocation and activity tracking.

Security:
- Sessions are stored server-side (not in JWT only)
- Logout immediately ends the session
- A session ends after the inactivity window without activity
- Terminal sessions always carry a LogoutReason
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import update, delete
from sqlmodel import Session as DBSession, select

from gatekeeper.auth.devices import DeviceInfo
from gatekeeper.auth.models import Session, LogoutReason
from gatekeeper.clock import utcnow


async def create_session(
    db: DBSession,
    account_id: UUID,
    refresh_token_id: UUID,
    inactivity_window: timedelta,
    device: Optional[DeviceInfo] = None,
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Session:
    """
    Create a new server-side session.

    Args:
        db: Database session
        account_id: Owner of the session
        refresh_token_id: Reserved refresh token row this device starts with
        inactivity_window: Idle time after which the session ends
        device: Parsed user agent details
        ip_address: Client IP for audit

    Returns:
        Created Session object
    """
    now = now or utcnow()
    device = device or DeviceInfo()

    session = Session(
        account_id=account_id,
        refresh_token_id=refresh_token_id,
        user_agent=device.user_agent,
        browser=device.browser,
        os=device.os,
        device=device.device,
        is_mobile=device.is_mobile,
        ip_address=ip_address,
        is_active=True,
        last_activity_at=now,
        expires_at=now + inactivity_window,
        login_at=now,
    )

    db.add(session)
    db.commit()
    db.refresh(session)

    return session


async def get_session(db: DBSession, session_id: UUID) -> Optional[Session]:
    return db.get(Session, session_id)


def has_timed_out(session: Session, inactivity_window: timedelta, now: datetime) -> bool:
    return now - session.last_activity_at > inactivity_window


def touch(session: Session, inactivity_window: timedelta, now: datetime) -> None:
    """Record activity and slide the expiry forward. Caller commits."""
    session.last_activity_at = now
    session.expires_at = now + inactivity_window


def end(session: Session, reason: LogoutReason, now: datetime) -> None:
    """Mark a session terminal. Caller commits."""
    session.is_active = False
    session.logout_at = now
    session.logout_reason = reason


async def touch_session(
    db: DBSession,
    session: Session,
    inactivity_window: timedelta,
    now: Optional[datetime] = None,
) -> Session:
    touch(session, inactivity_window, now or utcnow())
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


async def validate_session(
    db: DBSession,
    session_id: UUID,
    account_id: UUID,
    inactivity_window: timedelta,
    now: Optional[datetime] = None,
) -> Optional[Session]:
    """
    Validate a session is active and belongs to the account.

    Validation checks:
        1. Session exists
        2. Session belongs to account
        3. Session is active
        4. Session has not been idle longer than the inactivity window

    A session failing check 4 is ended with `inactivity_timeout`.
    On success the activity timestamp is refreshed.

    Returns:
        Session if valid, None otherwise
    """
    now = now or utcnow()
    statement = select(Session).where(
        Session.id == session_id,
        Session.account_id == account_id,
        Session.is_active == True,
    )
    session = db.exec(statement).first()

    if not session:
        return None

    if has_timed_out(session, inactivity_window, now):
        end(session, LogoutReason.INACTIVITY_TIMEOUT, now)
        db.add(session)
        db.commit()
        return None

    return await touch_session(db, session, inactivity_window, now)


async def end_session(
    db: DBSession,
    session_id: UUID,
    reason: LogoutReason,
    now: Optional[datetime] = None,
) -> bool:
    """
    End a single session.

    Returns:
        True if an active session was ended, False if missing or already terminal
    """
    result = db.connection().execute(
        update(Session)
        .where(Session.id == session_id, Session.is_active == True)
        .values(is_active=False, logout_at=now or utcnow(), logout_reason=reason)
    )
    db.commit()
    return result.rowcount == 1


async def end_all_sessions(
    db: DBSession,
    account_id: UUID,
    reason: LogoutReason,
    now: Optional[datetime] = None,
) -> int:
    """
    End all active sessions for an account (force logout everywhere).

    Use cases:
        - Password change
        - Refresh token reuse
        - Explicit logout from all devices

    Returns:
        Number of sessions ended
    """
    result = db.connection().execute(
        update(Session)
        .where(Session.account_id == account_id, Session.is_active == True)
        .values(is_active=False, logout_at=now or utcnow(), logout_reason=reason)
    )
    db.commit()
    return result.rowcount


async def end_other_sessions(
    db: DBSession,
    account_id: UUID,
    except_session_id: UUID,
    reason: LogoutReason,
    now: Optional[datetime] = None,
) -> list[UUID]:
    """
    End every active session of the account except `except_session_id`.

    Returns:
        Refresh token ids of the ended sessions, for revocation
    """
    statement = select(Session).where(
        Session.account_id == account_id,
        Session.is_active == True,
        Session.id != except_session_id,
    )
    targets = db.exec(statement).all()
    now = now or utcnow()

    token_ids = []
    for session in targets:
        end(session, reason, now)
        db.add(session)
        token_ids.append(session.refresh_token_id)

    db.commit()
    return token_ids


async def get_active_sessions(db: DBSession, account_id: UUID) -> list[Session]:
    """
    Get all active sessions for an account, most recently used first.

    Use cases:
        - Show the user their signed-in devices
    """
    statement = (
        select(Session)
        .where(Session.account_id == account_id, Session.is_active == True)
        .order_by(Session.last_activity_at.desc())
    )
    return list(db.exec(statement).all())


async def expire_inactive(
    db: DBSession,
    inactivity_window: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """
    End every active session idle for longer than the inactivity window.

    Idempotent batch update (active -> inactive only); safe to run
    alongside live traffic.

    Returns:
        Number of sessions ended
    """
    now = now or utcnow()
    cutoff = now - inactivity_window

    result = db.connection().execute(
        update(Session)
        .where(Session.is_active == True, Session.last_activity_at < cutoff)
        .values(
            is_active=False,
            logout_at=now,
            logout_reason=LogoutReason.INACTIVITY_TIMEOUT,
        )
    )
    db.commit()
    return result.rowcount


async def purge_terminated_sessions(
    db: DBSession,
    retention: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """Delete terminal sessions that ended more than `retention` ago."""
    now = now or utcnow()
    result = db.connection().execute(
        delete(Session).where(
            Session.is_active == False,
            Session.logout_at < now - retention,
        )
    )
    db.commit()
    return result.rowcount
