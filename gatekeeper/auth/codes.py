"""
Gatekeeper - One-Time Code Ledger

Short-lived, single-use, purpose-scoped numeric codes for email
verification, sign-in step-up and password reset.

Rules:
- Verification only looks at the most recently issued unused,
  unexpired code for (email, purpose); issuing a new code supersedes
  older ones
- A code is marked used with a conditional update, so two concurrent
  verifications cannot both spend it
- Expired codes never validate, used or not
"""

import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update, delete, or_
from sqlmodel import Session as DBSession, select

from gatekeeper.auth.delivery import mask_email
from gatekeeper.auth.models import OneTimeCode, CodePurpose
from gatekeeper.clock import utcnow
from gatekeeper.errors import ValidationError


logger = logging.getLogger(__name__)

CODE_LENGTH = 6
_CODE_PATTERN = re.compile(r"^\d{6}$")


def generate_code() -> str:
    """Random 6-digit code from a CSPRNG, zero-padded."""
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


def is_valid_code_format(code: str) -> bool:
    return bool(code) and bool(_CODE_PATTERN.match(code))


async def issue_code(
    db: DBSession,
    email: str,
    purpose: CodePurpose,
    ttl: timedelta,
    now: Optional[datetime] = None,
) -> OneTimeCode:
    """
    Store a fresh code for (email, purpose).

    Returns:
        The persisted OneTimeCode; the caller dispatches `code`
    """
    now = now or utcnow()
    record = OneTimeCode(
        email=email.lower(),
        code=generate_code(),
        purpose=purpose,
        expires_at=now + ttl,
        is_used=False,
        created_at=now,
    )
    db.add(record)
    db.commit()
    db.refresh(record)

    logger.info("Issued %s code for %s", purpose.value, mask_email(record.email))
    return record


async def consume_code(
    db: DBSession,
    email: str,
    purpose: CodePurpose,
    code: str,
    now: Optional[datetime] = None,
) -> OneTimeCode:
    """
    Verify and spend a code.

    Raises:
        ValidationError: Malformed, wrong, expired, superseded or already used
    """
    if not is_valid_code_format(code):
        raise ValidationError("Code must be 6 digits")

    now = now or utcnow()
    statement = (
        select(OneTimeCode)
        .where(
            OneTimeCode.email == email.lower(),
            OneTimeCode.purpose == purpose,
            OneTimeCode.is_used == False,
            OneTimeCode.expires_at > now,
        )
        .order_by(OneTimeCode.id.desc())
    )
    latest = db.exec(statement).first()

    if latest is None or not hmac.compare_digest(latest.code, code):
        raise ValidationError("Invalid or expired code")

    result = db.connection().execute(
        update(OneTimeCode)
        .where(OneTimeCode.id == latest.id, OneTimeCode.is_used == False)
        .values(is_used=True)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ValidationError("Invalid or expired code")

    db.commit()
    db.refresh(latest)
    return latest


async def purge_expired_codes(db: DBSession, now: Optional[datetime] = None) -> int:
    """Delete codes that can never validate again (expired or used)."""
    now = now or utcnow()
    result = db.connection().execute(
        delete(OneTimeCode).where(
            or_(OneTimeCode.expires_at <= now, OneTimeCode.is_used == True)
        )
    )
    db.commit()
    return result.rowcount
