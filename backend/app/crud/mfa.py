"""CRUD operations for MFA credentials, sessions and throttling state.

Two writes here must be race-free under concurrent requests:

* marking a backup code used (``MFABackupCodeCRUD.mark_used``)
* consuming a setup session (``MFASetupSessionCRUD.consume``)

Each is a single conditional ``UPDATE`` whose ``rowcount`` decides the
winner; callers never read-then-write these fields. Failed attempts are
append-only rows (``MFAFailedAttemptCRUD.record_failure``), so concurrent
failures are never lost to an overwrite.

Nothing in this module commits. The service that owns the operation
commits once the whole state transition is staged.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.mfa import (
    MFAAuditAction,
    MFAAuditLog,
    MFABackupCode,
    MFAEmailOTP,
    MFAFailedAttempt,
    MFAMethod,
    MFAPolicy,
    MFASetupSession,
    MFAStatus,
    TrustedDevice,
    UserMFA,
)

POLICY_ROW_ID = 1


class UserMFACRUD:
    """CRUD operations for UserMFA (one enrollment per user)."""

    @staticmethod
    async def get(db: AsyncSession, user_id: UUID) -> Optional[UserMFA]:
        result = await db.execute(
            select(UserMFA).where(UserMFA.user_id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_or_create(db: AsyncSession, user_id: UUID) -> UserMFA:
        """Enrollments are created lazily, as not_enrolled, on first access."""
        enrollment = await UserMFACRUD.get(db, user_id)
        if enrollment:
            return enrollment

        try:
            async with db.begin_nested():
                enrollment = UserMFA(
                    user_id=user_id,
                    status=MFAStatus.NOT_ENROLLED,
                    method=MFAMethod.NONE,
                )
                db.add(enrollment)
        except IntegrityError:
            # A concurrent request created it first
            enrollment = await UserMFACRUD.get(db, user_id)
        return enrollment

    @staticmethod
    def mark_pending(enrollment: UserMFA, method: MFAMethod) -> None:
        """The candidate secret stays on the setup session until it is verified."""
        enrollment.status = MFAStatus.PENDING_SETUP
        enrollment.method = method
        enrollment.secret = None
        enrollment.last_totp_step = None

    @staticmethod
    def activate(
        enrollment: UserMFA,
        method: MFAMethod,
        secret: Optional[str],
        totp_step: Optional[int],
        now: datetime,
    ) -> None:
        enrollment.status = MFAStatus.ACTIVE
        enrollment.method = method
        enrollment.secret = secret if method == MFAMethod.AUTHENTICATOR else None
        enrollment.last_totp_step = totp_step
        enrollment.activated_at = now
        enrollment.last_used_at = now

    @staticmethod
    async def advance_totp_step(db: AsyncSession, user_id: UUID, step: int) -> bool:
        """
        Record *step* as used. Returns False if it (or a later step) was already
        accepted, which is how a replayed code is rejected.
        """
        result = await db.execute(
            update(UserMFA)
            .where(
                UserMFA.user_id == user_id,
                UserMFA.status == MFAStatus.ACTIVE,
                or_(UserMFA.last_totp_step.is_(None), UserMFA.last_totp_step < step),
            )
            .values(last_totp_step=step)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def touch_last_used(db: AsyncSession, user_id: UUID, now: datetime) -> None:
        await db.execute(
            update(UserMFA)
            .where(UserMFA.user_id == user_id)
            .values(last_used_at=now)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def reset(enrollment: UserMFA) -> None:
        enrollment.status = MFAStatus.NOT_ENROLLED
        enrollment.method = MFAMethod.NONE
        enrollment.secret = None
        enrollment.last_totp_step = None
        enrollment.activated_at = None


class MFABackupCodeCRUD:
    """CRUD operations for hashed backup codes."""

    @staticmethod
    async def replace_all(db: AsyncSession, user_id: UUID, code_hashes: List[str]) -> None:
        """Drop every existing code for the user and store a fresh batch."""
        await db.execute(delete(MFABackupCode).where(MFABackupCode.user_id == user_id))
        db.add_all(MFABackupCode(user_id=user_id, code_hash=h) for h in code_hashes)

    @staticmethod
    async def list_unused(db: AsyncSession, user_id: UUID) -> List[MFABackupCode]:
        result = await db.execute(
            select(MFABackupCode).where(
                MFABackupCode.user_id == user_id,
                MFABackupCode.used_at.is_(None),
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def count_unused(db: AsyncSession, user_id: UUID) -> int:
        result = await db.execute(
            select(func.count()).select_from(MFABackupCode).where(
                MFABackupCode.user_id == user_id,
                MFABackupCode.used_at.is_(None),
            )
        )
        return result.scalar_one()

    @staticmethod
    async def mark_used(db: AsyncSession, code_id: UUID, now: datetime) -> bool:
        """Atomic check-and-mark. Exactly one concurrent caller gets True."""
        result = await db.execute(
            update(MFABackupCode)
            .where(MFABackupCode.id == code_id, MFABackupCode.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def delete_all(db: AsyncSession, user_id: UUID) -> int:
        result = await db.execute(delete(MFABackupCode).where(MFABackupCode.user_id == user_id))
        return result.rowcount


class MFASetupSessionCRUD:
    """CRUD operations for setup sessions."""

    @staticmethod
    async def create(
        db: AsyncSession,
        user_id: UUID,
        token_hash: str,
        method: MFAMethod,
        expires_at: datetime,
        candidate_secret: Optional[str] = None,
        otp_hash: Optional[str] = None,
    ) -> MFASetupSession:
        session = MFASetupSession(
            user_id=user_id,
            token_hash=token_hash,
            method=method,
            candidate_secret=candidate_secret,
            otp_hash=otp_hash,
            expires_at=expires_at,
        )
        db.add(session)
        await db.flush()
        return session

    @staticmethod
    async def get_by_token_hash(db: AsyncSession, token_hash: str) -> Optional[MFASetupSession]:
        result = await db.execute(
            select(MFASetupSession)
            .where(MFASetupSession.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_latest_for_user(db: AsyncSession, user_id: UUID) -> Optional[MFASetupSession]:
        result = await db.execute(
            select(MFASetupSession)
            .where(MFASetupSession.user_id == user_id)
            .order_by(MFASetupSession.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def delete_for_user(db: AsyncSession, user_id: UUID) -> int:
        result = await db.execute(
            delete(MFASetupSession).where(MFASetupSession.user_id == user_id)
        )
        return result.rowcount

    @staticmethod
    async def delete(db: AsyncSession, session_id: UUID) -> None:
        await db.execute(delete(MFASetupSession).where(MFASetupSession.id == session_id))

    @staticmethod
    async def consume(db: AsyncSession, session_id: UUID, now: datetime) -> bool:
        """Atomically consume a live session. False if it expired or was already used."""
        result = await db.execute(
            update(MFASetupSession)
            .where(
                MFASetupSession.id == session_id,
                MFASetupSession.consumed_at.is_(None),
                MFASetupSession.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def purge(db: AsyncSession, now: datetime) -> int:
        result = await db.execute(
            delete(MFASetupSession).where(
                or_(MFASetupSession.expires_at <= now, MFASetupSession.consumed_at.is_not(None))
            )
        )
        return result.rowcount


class MFAEmailOTPCRUD:
    """CRUD operations for login-time email codes."""

    @staticmethod
    async def invalidate_for_user(db: AsyncSession, user_id: UUID, now: datetime) -> None:
        """Only the most recently issued code may be valid."""
        await db.execute(
            update(MFAEmailOTP)
            .where(MFAEmailOTP.user_id == user_id, MFAEmailOTP.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def create(db: AsyncSession, user_id: UUID, code_hash: str, expires_at: datetime) -> MFAEmailOTP:
        otp = MFAEmailOTP(user_id=user_id, code_hash=code_hash, expires_at=expires_at)
        db.add(otp)
        await db.flush()
        return otp

    @staticmethod
    async def get_latest_unconsumed(db: AsyncSession, user_id: UUID) -> Optional[MFAEmailOTP]:
        result = await db.execute(
            select(MFAEmailOTP)
            .where(MFAEmailOTP.user_id == user_id, MFAEmailOTP.consumed_at.is_(None))
            .order_by(MFAEmailOTP.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def consume(db: AsyncSession, otp_id: UUID, now: datetime) -> bool:
        result = await db.execute(
            update(MFAEmailOTP)
            .where(MFAEmailOTP.id == otp_id, MFAEmailOTP.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def delete_for_user(db: AsyncSession, user_id: UUID) -> int:
        result = await db.execute(delete(MFAEmailOTP).where(MFAEmailOTP.user_id == user_id))
        return result.rowcount

    @staticmethod
    async def purge(db: AsyncSession, now: datetime) -> int:
        result = await db.execute(
            delete(MFAEmailOTP).where(
                or_(MFAEmailOTP.expires_at <= now, MFAEmailOTP.consumed_at.is_not(None))
            )
        )
        return result.rowcount


class MFAFailedAttemptCRUD:
    """Failed verifications shared by setup and login, one row per failure."""

    @staticmethod
    async def count_recent(db: AsyncSession, user_id: UUID, window_cutoff: datetime) -> int:
        """Failures recorded strictly after *window_cutoff*."""
        result = await db.execute(
            select(func.count())
            .select_from(MFAFailedAttempt)
            .where(
                MFAFailedAttempt.user_id == user_id,
                MFAFailedAttempt.attempted_at > window_cutoff,
            )
        )
        return result.scalar_one()

    @staticmethod
    async def record_failure(
        db: AsyncSession,
        user_id: UUID,
        now: datetime,
        window_cutoff: datetime,
    ) -> int:
        """
        Store one failure at *now* and return the failures inside the window.

        The insert is flushed before counting, so the returned total always
        includes this failure and any concurrent ones already flushed.
        """
        db.add(MFAFailedAttempt(user_id=user_id, attempted_at=now))
        await db.flush()
        return await MFAFailedAttemptCRUD.count_recent(db, user_id, window_cutoff)

    @staticmethod
    async def clear(db: AsyncSession, user_id: UUID) -> int:
        result = await db.execute(
            delete(MFAFailedAttempt).where(MFAFailedAttempt.user_id == user_id)
        )
        return result.rowcount

    @staticmethod
    async def purge(db: AsyncSession, window_cutoff: datetime) -> int:
        result = await db.execute(
            delete(MFAFailedAttempt).where(MFAFailedAttempt.attempted_at <= window_cutoff)
        )
        return result.rowcount


class TrustedDeviceCRUD:
    """CRUD operations for remembered devices."""

    @staticmethod
    async def get(db: AsyncSession, user_id: UUID, fingerprint: str) -> Optional[TrustedDevice]:
        result = await db.execute(
            select(TrustedDevice).where(
                TrustedDevice.user_id == user_id,
                TrustedDevice.device_fingerprint == fingerprint,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def upsert(
        db: AsyncSession,
        user_id: UUID,
        fingerprint: str,
        trusted_until: datetime,
        device_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TrustedDevice:
        device = await TrustedDeviceCRUD.get(db, user_id, fingerprint)
        if device is None:
            device = TrustedDevice(user_id=user_id, device_fingerprint=fingerprint)
            db.add(device)
        device.trusted_until = trusted_until
        if device_name:
            device.device_name = device_name
        if ip_address:
            device.ip_address = ip_address
        if user_agent:
            device.user_agent = user_agent
        await db.flush()
        return device

    @staticmethod
    async def count_valid(db: AsyncSession, user_id: UUID, now: datetime) -> int:
        result = await db.execute(
            select(func.count()).select_from(TrustedDevice).where(
                TrustedDevice.user_id == user_id,
                TrustedDevice.trusted_until > now,
            )
        )
        return result.scalar_one()

    @staticmethod
    async def delete(db: AsyncSession, user_id: UUID, fingerprint: str) -> int:
        result = await db.execute(
            delete(TrustedDevice).where(
                TrustedDevice.user_id == user_id,
                TrustedDevice.device_fingerprint == fingerprint,
            )
        )
        return result.rowcount

    @staticmethod
    async def delete_all(db: AsyncSession, user_id: UUID) -> int:
        result = await db.execute(delete(TrustedDevice).where(TrustedDevice.user_id == user_id))
        return result.rowcount

    @staticmethod
    async def purge(db: AsyncSession, now: datetime) -> int:
        result = await db.execute(delete(TrustedDevice).where(TrustedDevice.trusted_until <= now))
        return result.rowcount


class MFAPolicyCRUD:
    """Singleton policy row."""

    @staticmethod
    async def get(db: AsyncSession) -> Optional[MFAPolicy]:
        result = await db.execute(select(MFAPolicy).where(MFAPolicy.id == POLICY_ROW_ID))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_or_create(db: AsyncSession, **defaults) -> MFAPolicy:
        policy = await MFAPolicyCRUD.get(db)
        if policy is None:
            policy = MFAPolicy(id=POLICY_ROW_ID, **defaults)
            db.add(policy)
            await db.flush()
        return policy


class MFAAuditCRUD:
    """Append-only MFA audit trail."""

    @staticmethod
    def record(
        db: AsyncSession,
        user_id: UUID,
        action: MFAAuditAction,
        method: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> MFAAuditLog:
        entry = MFAAuditLog(
            user_id=user_id,
            action=action,
            method=method,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
        db.add(entry)
        return entry

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: UUID, limit: int = 50) -> List[MFAAuditLog]:
        result = await db.execute(
            select(MFAAuditLog)
            .where(MFAAuditLog.user_id == user_id)
            .order_by(MFAAuditLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def purge(db: AsyncSession, cutoff: datetime) -> int:
        result = await db.execute(delete(MFAAuditLog).where(MFAAuditLog.created_at < cutoff))
        return result.rowcount


# Create singleton instances
user_mfa_crud = UserMFACRUD()
backup_code_crud = MFABackupCodeCRUD()
setup_session_crud = MFASetupSessionCRUD()
email_otp_crud = MFAEmailOTPCRUD()
failed_attempt_crud = MFAFailedAttemptCRUD()
trusted_device_crud = TrustedDeviceCRUD()
mfa_policy_crud = MFAPolicyCRUD()
mfa_audit_crud = MFAAuditCRUD()
