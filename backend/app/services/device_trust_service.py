"""Remembered devices that skip the MFA challenge until their trust lapses."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.crud.mfa import mfa_audit_crud, trusted_device_crud
from app.models.mfa import MFAAuditAction, TrustedDevice
from app.utils.datetime_utils import utc_now
from app.utils.logging_utils import fingerprint_ref

logger = logging.getLogger(__name__)


class DeviceTrustService:
    """Device trust records keyed by (user, device fingerprint)."""

    @staticmethod
    async def is_trusted(
        db: AsyncSession,
        user_id: UUID,
        device_fingerprint: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        """An expired record is the same as no record."""
        if not device_fingerprint:
            return False
        device = await trusted_device_crud.get(db, user_id, device_fingerprint)
        if device is None:
            return False
        return device.trusted_until > (now or utc_now())

    @staticmethod
    async def trust(
        db: AsyncSession,
        user_id: UUID,
        device_fingerprint: Optional[str],
        days: int,
        now: Optional[datetime] = None,
        device_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[TrustedDevice]:
        """
        Create or refresh trust until ``now + days``.

        Does not commit; it runs inside the login verification transaction.
        Returns None (and records nothing) when remembering is disabled.
        """
        if not device_fingerprint or days <= 0:
            return None

        now = now or utc_now()
        device = await trusted_device_crud.upsert(
            db,
            user_id,
            device_fingerprint,
            trusted_until=now + timedelta(days=days),
            device_name=device_name,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        mfa_audit_crud.record(
            db,
            user_id,
            MFAAuditAction.DEVICE_TRUSTED,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"device": fingerprint_ref(device_fingerprint), "days": days},
        )
        logger.info("Device %s trusted for user %s for %d days", fingerprint_ref(device_fingerprint), user_id, days)
        return device

    @staticmethod
    async def revoke(db: AsyncSession, user_id: UUID, device_fingerprint: str) -> int:
        """Forget one device. Revoking an unknown device is not an error."""
        removed = await trusted_device_crud.delete(db, user_id, device_fingerprint)
        if removed:
            mfa_audit_crud.record(
                db,
                user_id,
                MFAAuditAction.DEVICE_REVOKED,
                details={"device": fingerprint_ref(device_fingerprint)},
            )
        await db.commit()
        return removed

    @staticmethod
    async def revoke_all(db: AsyncSession, user_id: UUID) -> int:
        """Forget every device of the user (e.g. after a password change)."""
        removed = await trusted_device_crud.delete_all(db, user_id)
        if removed:
            mfa_audit_crud.record(
                db,
                user_id,
                MFAAuditAction.DEVICE_REVOKED,
                details={"all": True, "count": removed},
            )
            logger.info("Revoked %d trusted devices for user %s", removed, user_id)
        await db.commit()
        return removed


device_trust_service = DeviceTrustService()
