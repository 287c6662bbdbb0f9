"""
Gatekeeper - Refresh Token Store

Durable, hashed record of every issued refresh token.

Lifecycle:
    reserve (is_finalized=False, no hash)
      -> finalize (hash written, token becomes valid)
      -> revoke (exactly once, by compare-and-swap)

Security:
- Only the SHA-256 hash of a token is stored
- Lookups compare hashes in constant time
- Revocation is a conditional UPDATE; losing the race is reported to the
  caller so a replayed token can be treated as a breach signal
"""

import hashlib
import hmac
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import update, delete
from sqlalchemy import select as sa_select
from sqlmodel import Session as DBSession, select

from gatekeeper.auth.models import RefreshToken, RevocationReason, Session
from gatekeeper.clock import utcnow


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def reserve_refresh_token(
    db: DBSession,
    account_id: UUID,
    expires_at: datetime,
    now: Optional[datetime] = None,
) -> RefreshToken:
    """
    Allocate a not-yet-valid row so a Session can reference its id
    before the token itself has been minted.
    """
    row = RefreshToken(
        account_id=account_id,
        token_hash=None,
        is_finalized=False,
        expires_at=expires_at,
        created_at=now or utcnow(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


async def finalize_refresh_token(
    db: DBSession,
    row: RefreshToken,
    token: str,
    expires_at: Optional[datetime] = None,
) -> RefreshToken:
    """Write the hash of the minted token; the row becomes valid."""
    row.token_hash = hash_token(token)
    row.is_finalized = True
    if expires_at is not None:
        row.expires_at = expires_at
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def build_refresh_token(
    account_id: UUID,
    token: str,
    expires_at: datetime,
    now: Optional[datetime] = None,
) -> RefreshToken:
    """
    Build a finalized row without committing it.

    Used by rotation, where the new row must land in the same commit as
    the revocation of its predecessor.
    """
    return RefreshToken(
        account_id=account_id,
        token_hash=hash_token(token),
        is_finalized=True,
        expires_at=expires_at,
        created_at=now or utcnow(),
    )


async def find_matching_token(
    db: DBSession,
    account_id: UUID,
    token: str,
    now: Optional[datetime] = None,
    include_revoked: bool = False,
) -> Optional[RefreshToken]:
    """
    Find the account's unexpired, finalized row whose hash matches `token`.

    Args:
        include_revoked: Also match revoked rows (used for reuse detection)

    Returns:
        Matching row, or None
    """
    now = now or utcnow()
    presented = hash_token(token)

    conditions = [
        RefreshToken.account_id == account_id,
        RefreshToken.is_finalized == True,
        RefreshToken.expires_at > now,
    ]
    if not include_revoked:
        conditions.append(RefreshToken.is_revoked == False)

    match = None
    for row in db.exec(select(RefreshToken).where(*conditions)).all():
        # Keep scanning after a hit so timing does not depend on position
        if hmac.compare_digest(row.token_hash, presented):
            match = row
    return match


def is_valid(row: RefreshToken, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return row.is_finalized and not row.is_revoked and row.expires_at > now


async def revoke_if_active(
    db: DBSession,
    token_id: UUID,
    reason: RevocationReason,
    now: Optional[datetime] = None,
    replaced_by: Optional[UUID] = None,
) -> bool:
    """
    Compare-and-swap revoke: only flips rows that are still unrevoked.

    Does not commit; the caller owns the transaction.

    Returns:
        True if this call performed the revocation
    """
    values = {
        "is_revoked": True,
        "revoked_at": now or utcnow(),
        "revoked_reason": reason,
    }
    if replaced_by is not None:
        values["replaced_by"] = replaced_by

    result = db.connection().execute(
        update(RefreshToken)
        .where(RefreshToken.id == token_id, RefreshToken.is_revoked == False)
        .values(**values)
    )
    return result.rowcount == 1


async def revoke_refresh_token(
    db: DBSession,
    token_id: UUID,
    reason: RevocationReason,
    now: Optional[datetime] = None,
) -> bool:
    """Revoke a single row and commit."""
    revoked = await revoke_if_active(db, token_id, reason, now)
    db.commit()
    return revoked


async def revoke_all_refresh_tokens(
    db: DBSession,
    account_id: UUID,
    reason: RevocationReason,
    now: Optional[datetime] = None,
) -> int:
    """
    Revoke every unrevoked token for an account.

    Use cases:
        - Password change / reset
        - Logout from all devices
        - Refresh token reuse detected

    Returns:
        Number of tokens revoked
    """
    result = db.connection().execute(
        update(RefreshToken)
        .where(RefreshToken.account_id == account_id, RefreshToken.is_revoked == False)
        .values(is_revoked=True, revoked_at=now or utcnow(), revoked_reason=reason)
    )
    db.commit()
    return result.rowcount


async def purge_expired_tokens(db: DBSession, now: Optional[datetime] = None) -> int:
    """
    Delete expired rows that no session references any more.

    Should be run periodically, after terminal sessions are purged.
    """
    now = now or utcnow()
    referenced = sa_select(Session.refresh_token_id)
    result = db.connection().execute(
        delete(RefreshToken).where(
            RefreshToken.expires_at <= now,
            RefreshToken.id.not_in(referenced),
        )
    )
    db.commit()
    return result.rowcount
