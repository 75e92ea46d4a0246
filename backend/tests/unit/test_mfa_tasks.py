"""Unit tests for the MFA store cleanup task."""

from datetime import datetime, timedelta

import pytest

from app.crud.mfa import (
    email_otp_crud,
    failed_attempt_crud,
    mfa_audit_crud,
    setup_session_crud,
    trusted_device_crud,
)
from app.models.mfa import MFAAuditAction, MFAMethod
from app.workers.tasks.mfa_tasks import purge_expired_mfa_state


T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.mark.unit
@pytest.mark.asyncio
class TestPurgeExpiredMfaState:
    async def test_removes_only_dead_records(self, db_session, test_user):
        user_id = test_user.id

        await setup_session_crud.create(db_session, user_id, "a" * 64, MFAMethod.AUTHENTICATOR, T0 - timedelta(minutes=1))
        live = await setup_session_crud.create(db_session, user_id, "b" * 64, MFAMethod.AUTHENTICATOR, T0 + timedelta(minutes=20))
        await email_otp_crud.create(db_session, user_id, "h1", T0 - timedelta(seconds=1))
        await email_otp_crud.create(db_session, user_id, "h2", T0 + timedelta(minutes=5))
        await trusted_device_crud.upsert(db_session, user_id, "old", T0 - timedelta(days=1))
        await trusted_device_crud.upsert(db_session, user_id, "new", T0 + timedelta(days=1))
        await failed_attempt_crud.record_failure(
            db_session, user_id, T0 - timedelta(minutes=20), T0 - timedelta(minutes=35)
        )
        await failed_attempt_crud.record_failure(
            db_session, user_id, T0 - timedelta(minutes=5), T0 - timedelta(minutes=20)
        )
        old_entry = mfa_audit_crud.record(db_session, user_id, MFAAuditAction.SETUP_STARTED)
        old_entry.created_at = T0 - timedelta(days=400)
        new_entry = mfa_audit_crud.record(db_session, user_id, MFAAuditAction.VERIFY_SUCCESS)
        new_entry.created_at = T0 - timedelta(days=1)
        await db_session.commit()
        live_id = live.id

        counts = await purge_expired_mfa_state(db_session, now=T0)

        assert counts == {
            "setup_sessions": 1,
            "email_otps": 1,
            "trusted_devices": 1,
            "failed_attempts": 1,
            "audit_log": 1,
        }
        remaining = await setup_session_crud.get_latest_for_user(db_session, user_id)
        assert remaining.id == live_id
        assert await trusted_device_crud.get(db_session, user_id, "new") is not None
        assert await failed_attempt_crud.count_recent(db_session, user_id, T0 - timedelta(hours=1)) == 1
        assert [e.action for e in await mfa_audit_crud.list_for_user(db_session, user_id)] == [
            MFAAuditAction.VERIFY_SUCCESS
        ]

    async def test_consumed_records_removed(self, db_session, test_user):
        user_id = test_user.id
        session = await setup_session_crud.create(
            db_session, user_id, "c" * 64, MFAMethod.EMAIL_OTP, T0 + timedelta(minutes=20)
        )
        otp = await email_otp_crud.create(db_session, user_id, "h", T0 + timedelta(minutes=5))
        await setup_session_crud.consume(db_session, session.id, T0)
        await email_otp_crud.consume(db_session, otp.id, T0)
        await db_session.commit()

        counts = await purge_expired_mfa_state(db_session, now=T0)

        assert counts["setup_sessions"] == 1
        assert counts["email_otps"] == 1

    async def test_nothing_to_purge(self, db_session, test_user):
        counts = await purge_expired_mfa_state(db_session, now=T0)
        assert set(counts.values()) == {0}
