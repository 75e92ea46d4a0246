"""Unit tests for the conditional updates in the MFA CRUD layer."""

from datetime import datetime, timedelta

import pytest

from app.crud.mfa import (
    backup_code_crud,
    email_otp_crud,
    failed_attempt_crud,
    setup_session_crud,
    user_mfa_crud,
)
from app.models.mfa import MFAMethod, MFAStatus


T0 = datetime(2026, 3, 2, 9, 0, 0)
WINDOW = timedelta(minutes=15)


@pytest.mark.unit
@pytest.mark.asyncio
class TestUserMFACRUD:
    async def test_get_or_create_starts_not_enrolled(self, db_session, test_user):
        enrollment = await user_mfa_crud.get_or_create(db_session, test_user.id)
        await db_session.commit()

        assert enrollment.status == MFAStatus.NOT_ENROLLED
        assert enrollment.method == MFAMethod.NONE
        assert enrollment.secret is None

    async def test_get_or_create_is_idempotent(self, db_session, test_user):
        first = await user_mfa_crud.get_or_create(db_session, test_user.id)
        await db_session.commit()
        second = await user_mfa_crud.get_or_create(db_session, test_user.id)
        assert first.id == second.id

    async def test_advance_totp_step_only_moves_forward(self, db_session, test_user):
        enrollment = await user_mfa_crud.get_or_create(db_session, test_user.id)
        user_mfa_crud.activate(enrollment, MFAMethod.AUTHENTICATOR, "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP", 100, T0)
        await db_session.commit()

        assert await user_mfa_crud.advance_totp_step(db_session, test_user.id, 100) is False
        assert await user_mfa_crud.advance_totp_step(db_session, test_user.id, 99) is False
        assert await user_mfa_crud.advance_totp_step(db_session, test_user.id, 101) is True
        assert await user_mfa_crud.advance_totp_step(db_session, test_user.id, 101) is False

    async def test_advance_totp_step_requires_active_enrollment(self, db_session, test_user):
        enrollment = await user_mfa_crud.get_or_create(db_session, test_user.id)
        user_mfa_crud.mark_pending(enrollment, MFAMethod.AUTHENTICATOR)
        await db_session.commit()

        assert await user_mfa_crud.advance_totp_step(db_session, test_user.id, 1) is False

    async def test_secret_is_encrypted_at_rest(self, db_session, test_user):
        from sqlalchemy import text

        enrollment = await user_mfa_crud.get_or_create(db_session, test_user.id)
        user_mfa_crud.activate(enrollment, MFAMethod.AUTHENTICATOR, "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP", 1, T0)
        await db_session.commit()

        raw = (await db_session.execute(text("SELECT secret FROM user_mfa"))).scalar_one()
        assert raw.startswith("v1:")
        assert "JBSWY3DP" not in raw

        reloaded = await user_mfa_crud.get(db_session, test_user.id)
        assert reloaded.secret == "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"


@pytest.mark.unit
@pytest.mark.asyncio
class TestBackupCodeCRUD:
    async def test_mark_used_wins_exactly_once(self, db_session, test_user):
        await backup_code_crud.replace_all(db_session, test_user.id, ["h1", "h2"])
        await db_session.commit()

        # Two redeemers that both saw the code as unused
        seen_by_first = await backup_code_crud.list_unused(db_session, test_user.id)
        seen_by_second = await backup_code_crud.list_unused(db_session, test_user.id)
        code_id = seen_by_first[0].id
        assert code_id in {c.id for c in seen_by_second}

        assert await backup_code_crud.mark_used(db_session, code_id, T0) is True
        assert await backup_code_crud.mark_used(db_session, code_id, T0) is False
        assert await backup_code_crud.count_unused(db_session, test_user.id) == 1

    async def test_replace_all_discards_old_codes(self, db_session, test_user):
        await backup_code_crud.replace_all(db_session, test_user.id, ["a", "b", "c"])
        await db_session.commit()
        await backup_code_crud.replace_all(db_session, test_user.id, ["d"])
        await db_session.commit()

        remaining = await backup_code_crud.list_unused(db_session, test_user.id)
        assert [c.code_hash for c in remaining] == ["d"]


@pytest.mark.unit
@pytest.mark.asyncio
class TestSetupSessionCRUD:
    async def _create(self, db, user_id, expires_at, token_hash="a" * 64):
        session = await setup_session_crud.create(
            db,
            user_id=user_id,
            token_hash=token_hash,
            method=MFAMethod.AUTHENTICATOR,
            expires_at=expires_at,
            candidate_secret="JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP",
        )
        await db.commit()
        return session

    async def test_consume_once(self, db_session, test_user):
        session = await self._create(db_session, test_user.id, T0 + timedelta(minutes=30))

        assert await setup_session_crud.consume(db_session, session.id, T0) is True
        assert await setup_session_crud.consume(db_session, session.id, T0) is False

    async def test_consume_rejects_expired(self, db_session, test_user):
        session = await self._create(db_session, test_user.id, T0 + timedelta(minutes=30))

        assert await setup_session_crud.consume(db_session, session.id, T0 + timedelta(minutes=30)) is False

    async def test_lookup_sees_consumption(self, db_session, test_user):
        session = await self._create(db_session, test_user.id, T0 + timedelta(minutes=30))
        await setup_session_crud.consume(db_session, session.id, T0)
        await db_session.commit()

        again = await setup_session_crud.get_by_token_hash(db_session, "a" * 64)
        assert again.consumed_at == T0
        assert again.is_usable_at(T0) is False

    async def test_purge_removes_expired_and_consumed(self, db_session, test_user):
        await self._create(db_session, test_user.id, T0 + timedelta(minutes=30), "l" * 64)
        await self._create(db_session, test_user.id, T0 - timedelta(minutes=1), "e" * 64)
        used = await self._create(db_session, test_user.id, T0 + timedelta(minutes=30), "u" * 64)
        await setup_session_crud.consume(db_session, used.id, T0)

        assert await setup_session_crud.purge(db_session, T0) == 2
        await db_session.commit()
        assert await setup_session_crud.get_by_token_hash(db_session, "l" * 64) is not None


@pytest.mark.unit
@pytest.mark.asyncio
class TestEmailOTPCRUD:
    async def test_invalidate_leaves_only_new_code(self, db_session, test_user):
        await email_otp_crud.create(db_session, test_user.id, "old", T0 + timedelta(minutes=10))
        await email_otp_crud.invalidate_for_user(db_session, test_user.id, T0)
        await email_otp_crud.create(db_session, test_user.id, "new", T0 + timedelta(minutes=10))
        await db_session.commit()

        latest = await email_otp_crud.get_latest_unconsumed(db_session, test_user.id)
        assert latest.code_hash == "new"

    async def test_consume_once(self, db_session, test_user):
        otp = await email_otp_crud.create(db_session, test_user.id, "h", T0 + timedelta(minutes=10))
        await db_session.commit()

        assert await email_otp_crud.consume(db_session, otp.id, T0) is True
        assert await email_otp_crud.consume(db_session, otp.id, T0) is False
        assert await email_otp_crud.get_latest_unconsumed(db_session, test_user.id) is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestFailedAttemptCRUD:
    async def test_first_failure_counts_one(self, db_session, test_user):
        assert await failed_attempt_crud.record_failure(db_session, test_user.id, T0, T0 - WINDOW) == 1
        await db_session.commit()

        assert await failed_attempt_crud.count_recent(db_session, test_user.id, T0 - WINDOW) == 1

    async def test_failures_accumulate_inside_window(self, db_session, test_user):
        for i in range(4):
            now = T0 + timedelta(minutes=i)
            count = await failed_attempt_crud.record_failure(db_session, test_user.id, now, now - WINDOW)
        assert count == 4

    async def test_old_failures_age_out_individually(self, db_session, test_user):
        await failed_attempt_crud.record_failure(db_session, test_user.id, T0, T0 - WINDOW)
        for i in range(3):
            now = T0 + timedelta(minutes=10, seconds=i)
            await failed_attempt_crud.record_failure(db_session, test_user.id, now, now - WINDOW)

        # Only the T0 failure has left the window; the later three still count
        later = T0 + WINDOW + timedelta(seconds=30)
        assert await failed_attempt_crud.count_recent(db_session, test_user.id, later - WINDOW) == 3
        assert await failed_attempt_crud.record_failure(db_session, test_user.id, later, later - WINDOW) == 4

    async def test_failure_exactly_at_cutoff_is_excluded(self, db_session, test_user):
        await failed_attempt_crud.record_failure(db_session, test_user.id, T0, T0 - WINDOW)

        assert await failed_attempt_crud.count_recent(db_session, test_user.id, T0) == 0
        assert await failed_attempt_crud.count_recent(db_session, test_user.id, T0 - timedelta(seconds=1)) == 1

    async def test_clear_removes_history(self, db_session, test_user, admin_user):
        await failed_attempt_crud.record_failure(db_session, test_user.id, T0, T0 - WINDOW)
        await failed_attempt_crud.record_failure(db_session, test_user.id, T0, T0 - WINDOW)
        await failed_attempt_crud.record_failure(db_session, admin_user.id, T0, T0 - WINDOW)

        assert await failed_attempt_crud.clear(db_session, test_user.id) == 2
        assert await failed_attempt_crud.count_recent(db_session, test_user.id, T0 - WINDOW) == 0
        assert await failed_attempt_crud.count_recent(db_session, admin_user.id, T0 - WINDOW) == 1

        assert await failed_attempt_crud.record_failure(db_session, test_user.id, T0, T0 - WINDOW) == 1

    async def test_purge_keeps_failures_inside_window(self, db_session, test_user, admin_user):
        await failed_attempt_crud.record_failure(db_session, test_user.id, T0, T0 - WINDOW)
        old = T0 - timedelta(hours=1)
        await failed_attempt_crud.record_failure(db_session, admin_user.id, old, old - WINDOW)

        assert await failed_attempt_crud.purge(db_session, T0 - WINDOW) == 1
        assert await failed_attempt_crud.count_recent(db_session, test_user.id, T0 - WINDOW) == 1
        assert await failed_attempt_crud.count_recent(db_session, admin_user.id, old - WINDOW) == 0
