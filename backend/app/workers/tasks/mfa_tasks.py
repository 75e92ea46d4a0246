"""Celery tasks for MFA store maintenance."""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.database import AsyncSessionLocal
from app.core.metrics import track_celery_task
from app.crud.mfa import (
    email_otp_crud,
    failed_attempt_crud,
    mfa_audit_crud,
    setup_session_crud,
    trusted_device_crud,
)
from app.utils.datetime_utils import utc_now
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def purge_expired_mfa_state(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Delete MFA records that can never be used again.

    - setup sessions and email codes that expired or were consumed
    - trusted devices past ``trusted_until``
    - failed attempts that fell out of the throttle window
    - audit rows older than MFA_AUDIT_RETENTION_DAYS

    Returns the number of rows removed per kind.
    """
    now = now or utc_now()
    counts = {
        "setup_sessions": await setup_session_crud.purge(db, now),
        "email_otps": await email_otp_crud.purge(db, now),
        "trusted_devices": await trusted_device_crud.purge(db, now),
        "failed_attempts": await failed_attempt_crud.purge(
            db, now - timedelta(minutes=settings.MFA_FAILED_ATTEMPT_WINDOW_MINUTES)
        ),
        "audit_log": await mfa_audit_crud.purge(
            db, now - timedelta(days=settings.MFA_AUDIT_RETENTION_DAYS)
        ),
    }
    await db.commit()
    return counts


@celery_app.task(name="cleanup_expired_mfa_state")
def cleanup_expired_mfa_state_task():
    """
    Prune expired MFA state.

    Runs every MFA_CLEANUP_INTERVAL_MINUTES (15 by default).
    """
    started = time.monotonic()
    try:
        counts = asyncio.run(_cleanup_expired_mfa_state_async())
    except Exception:
        track_celery_task("cleanup_expired_mfa_state", "failure", time.monotonic() - started)
        raise
    track_celery_task("cleanup_expired_mfa_state", "success", time.monotonic() - started)
    return counts


async def _cleanup_expired_mfa_state_async() -> Dict[str, int]:
    """Async implementation of the MFA cleanup."""
    async with AsyncSessionLocal() as db:
        try:
            counts = await purge_expired_mfa_state(db)
        except Exception as e:
            logger.error("Error cleaning up MFA state: %s", e, exc_info=True)
            raise
        logger.info("MFA cleanup complete: %s", counts)
        return counts
