"""Organisation MFA policy: who must use MFA, with which methods, and when."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.crud.mfa import mfa_audit_crud, mfa_policy_crud, user_mfa_crud
from app.models.mfa import MFAAuditAction, MFAMethod, MFAPolicy, MFAStatus
from app.models.user import User, UserRole
from app.schemas.mfa import MFAPolicySchema, PolicySaveStatus
from app.services.device_trust_service import device_trust_service
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

# Methods the verification engine can actually check, in display order
SUPPORTED_METHODS = (MFAMethod.AUTHENTICATOR, MFAMethod.EMAIL_OTP)

DEFAULT_POLICY = {
    "enforced": False,
    "allowed_methods": [m.value for m in SUPPORTED_METHODS],
    "required_roles": [UserRole.ADMIN.value],
    "grace_period_days": 7,
    "remember_device_days": 30,
}


@dataclass
class PolicySaveOutcome:
    status: PolicySaveStatus
    policy: Optional[MFAPolicy] = None


@dataclass
class RequirementOutcome:
    """Answer to "does this user have to pass MFA on this device right now?"."""

    required: bool
    grace_period_active: bool
    setup_required: bool
    enrollment_status: MFAStatus
    allowed_methods: List[MFAMethod] = field(default_factory=list)


def _role_value(role) -> str:
    return role.value if isinstance(role, UserRole) else str(role)


class MFAPolicyService:
    """Evaluates the singleton MFA policy against users and devices."""

    @staticmethod
    async def get_policy(db: AsyncSession) -> MFAPolicy:
        """
        Return the stored policy, or an unsaved policy carrying the defaults.

        Reading never writes; the row is created on first save.
        """
        policy = await mfa_policy_crud.get(db)
        if policy is None:
            policy = MFAPolicy(id=1, effective_since=None, **DEFAULT_POLICY)
        return policy

    @staticmethod
    def allowed_methods(policy: MFAPolicy) -> List[MFAMethod]:
        """Policy methods intersected with the methods we can verify."""
        configured = set(policy.allowed_methods or [])
        return [m for m in SUPPORTED_METHODS if m.value in configured]

    @staticmethod
    def is_misconfigured(data: MFAPolicySchema) -> bool:
        """
        Enforcement is in scope when the policy is enforced globally or names
        any role; it must then leave at least one usable method.
        """
        in_scope = data.enforced or bool(data.required_roles)
        usable = [m for m in data.allowed_methods if m in SUPPORTED_METHODS]
        return in_scope and not usable

    @staticmethod
    async def save_policy(
        db: AsyncSession,
        data: MFAPolicySchema,
        admin: User,
        now: Optional[datetime] = None,
    ) -> PolicySaveOutcome:
        """
        Validate and persist the policy.

        A misconfigured policy is rejected before anything is written. When
        ``enforced`` or ``required_roles`` change, ``effective_since`` moves to
        *now* so newly covered users get a full grace period.
        """
        now = now or utc_now()

        if MFAPolicyService.is_misconfigured(data):
            logger.warning("Rejected MFA policy from admin %s: no usable method while enforced", admin.id)
            return PolicySaveOutcome(status=PolicySaveStatus.POLICY_MISCONFIGURED)

        new_roles = [_role_value(r) for r in data.required_roles]
        new_methods = [m.value for m in data.allowed_methods]

        policy = await mfa_policy_crud.get(db)
        if policy is None:
            scope_changed = True
            policy = await mfa_policy_crud.get_or_create(db, effective_since=now, **DEFAULT_POLICY)
        else:
            scope_changed = (
                policy.enforced != data.enforced
                or sorted(policy.required_roles or []) != sorted(new_roles)
            )

        policy.enforced = data.enforced
        policy.allowed_methods = new_methods
        policy.required_roles = new_roles
        policy.grace_period_days = data.grace_period_days
        policy.remember_device_days = data.remember_device_days
        policy.updated_at = now
        policy.updated_by = admin.id
        if scope_changed:
            policy.effective_since = now

        mfa_audit_crud.record(
            db,
            admin.id,
            MFAAuditAction.POLICY_UPDATED,
            details={
                "enforced": data.enforced,
                "allowed_methods": new_methods,
                "required_roles": new_roles,
                "grace_period_days": data.grace_period_days,
                "remember_device_days": data.remember_device_days,
            },
        )
        await db.commit()

        logger.info(
            "MFA policy updated by %s (enforced=%s, roles=%s, methods=%s)",
            admin.id,
            data.enforced,
            new_roles,
            new_methods,
        )
        return PolicySaveOutcome(status=PolicySaveStatus.SAVED, policy=policy)

    @staticmethod
    def policy_applies_to(policy: MFAPolicy, user: User) -> bool:
        return bool(policy.enforced) or _role_value(user.role) in (policy.required_roles or [])

    @staticmethod
    async def requires_mfa(
        db: AsyncSession,
        user: User,
        device_fingerprint: Optional[str] = None,
        now: Optional[datetime] = None,
        policy: Optional[MFAPolicy] = None,
    ) -> bool:
        """False on a trusted device; otherwise enforced-or-role-in-scope."""
        if await device_trust_service.is_trusted(db, user.id, device_fingerprint, now=now):
            return False
        policy = policy or await MFAPolicyService.get_policy(db)
        return MFAPolicyService.policy_applies_to(policy, user)

    @staticmethod
    async def is_within_grace_period(
        db: AsyncSession,
        user: User,
        now: Optional[datetime] = None,
        policy: Optional[MFAPolicy] = None,
    ) -> bool:
        """
        True while an unenrolled user may still log in without MFA.

        The grace period runs from the later of account creation and the last
        change to the policy's enforcement scope.
        """
        now = now or utc_now()
        enrollment = await user_mfa_crud.get(db, user.id)
        if enrollment is not None and enrollment.status == MFAStatus.ACTIVE:
            return False

        policy = policy or await MFAPolicyService.get_policy(db)
        starts = [d for d in (user.created_at, policy.effective_since) if d is not None]
        if not starts:
            return False
        return now < max(starts) + timedelta(days=policy.grace_period_days or 0)

    @staticmethod
    async def evaluate(
        db: AsyncSession,
        user: User,
        device_fingerprint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RequirementOutcome:
        now = now or utc_now()
        policy = await MFAPolicyService.get_policy(db)
        enrollment = await user_mfa_crud.get(db, user.id)
        status = enrollment.status if enrollment is not None else MFAStatus.NOT_ENROLLED
        methods = MFAPolicyService.allowed_methods(policy)

        required = await MFAPolicyService.requires_mfa(
            db, user, device_fingerprint, now=now, policy=policy
        )
        grace = False
        setup_required = False
        if required and status != MFAStatus.ACTIVE:
            grace = await MFAPolicyService.is_within_grace_period(db, user, now=now, policy=policy)
            setup_required = not grace

        return RequirementOutcome(
            required=required,
            grace_period_active=grace,
            setup_required=setup_required,
            enrollment_status=status,
            allowed_methods=methods,
        )


mfa_policy_service = MFAPolicyService()
