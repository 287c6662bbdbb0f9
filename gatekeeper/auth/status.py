"""
Gatekeeper - Onboarding Status Ladder

Decides where the client should send a freshly authenticated account.

Each role class has an ordered list of steps; the first step whose
predicate holds wins. Later steps assume every earlier one passed
(e.g. KYC checks assume the profile is complete), so order matters and
lives only in LADDERS.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from gatekeeper.auth.models import Account, AccountStatus, KycStatus, Role


class RoleClass(str, Enum):
    KYC_GATED = "kyc_gated"
    STANDARD = "standard"
    ADMIN = "admin"


ROLE_CLASSES: dict[Role, RoleClass] = {
    Role.TEACHER: RoleClass.KYC_GATED,
    Role.SCHOOL: RoleClass.KYC_GATED,
    Role.RECRUITER: RoleClass.STANDARD,
    Role.SUPPLIER: RoleClass.STANDARD,
    Role.ADMIN: RoleClass.ADMIN,
}


class Redirect(str, Enum):
    VERIFY_EMAIL = "verify-email"
    COMPLETE_PROFILE = "complete-profile"
    KYC_SUBMISSION = "kyc-submission"
    KYC_PENDING = "kyc-pending"
    KYC_REJECTED = "kyc-rejected"
    KYC_RESUBMISSION = "kyc-resubmission"
    PENDING_APPROVAL = "pending-approval"
    DASHBOARD = "dashboard"


@dataclass(frozen=True)
class LadderStep:
    applies: Callable[[Account], bool]
    redirect: Redirect
    message: str
    include_reason: bool = False


@dataclass(frozen=True)
class StatusDecision:
    redirect_to: Redirect
    message: str
    kyc_status: KycStatus
    kyc_rejection_reason: Optional[str] = None


_EMAIL = LadderStep(
    lambda a: not a.is_email_verified,
    Redirect.VERIFY_EMAIL, "Email verification required",
)
_PROFILE = LadderStep(
    lambda a: not a.is_profile_complete,
    Redirect.COMPLETE_PROFILE, "Profile completion required",
)
_KYC_STEPS = [
    LadderStep(
        lambda a: a.kyc_status == KycStatus.NOT_SUBMITTED,
        Redirect.KYC_SUBMISSION, "KYC submission required",
    ),
    LadderStep(
        lambda a: a.kyc_status in (KycStatus.PENDING, KycStatus.UNDER_REVIEW),
        Redirect.KYC_PENDING, "KYC review pending",
    ),
    LadderStep(
        lambda a: a.kyc_status == KycStatus.REJECTED,
        Redirect.KYC_REJECTED, "KYC was rejected", include_reason=True,
    ),
    LadderStep(
        lambda a: a.kyc_status == KycStatus.RESUBMISSION_REQUIRED,
        Redirect.KYC_RESUBMISSION, "KYC resubmission required", include_reason=True,
    ),
]
_APPROVAL = LadderStep(
    lambda a: a.status != AccountStatus.ACTIVE,
    Redirect.PENDING_APPROVAL, "Account pending approval",
)

LADDERS: dict[RoleClass, list[LadderStep]] = {
    RoleClass.KYC_GATED: [_EMAIL, _PROFILE, *_KYC_STEPS, _APPROVAL],
    RoleClass.STANDARD: [_EMAIL, _PROFILE, _APPROVAL],
    RoleClass.ADMIN: [_EMAIL, _PROFILE],
}


def check_status(account: Account) -> StatusDecision:
    """Walk the account's ladder and return the first matching redirect."""
    for step in LADDERS[ROLE_CLASSES[account.role]]:
        if step.applies(account):
            return StatusDecision(
                redirect_to=step.redirect,
                message=step.message,
                kyc_status=account.kyc_status,
                kyc_rejection_reason=account.kyc_rejection_reason if step.include_reason else None,
            )

    return StatusDecision(
        redirect_to=Redirect.DASHBOARD,
        message="User status verified",
        kyc_status=account.kyc_status,
    )
