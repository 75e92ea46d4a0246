"""Unit tests for MFA policy evaluation."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app.crud.mfa import mfa_audit_crud, mfa_policy_crud, user_mfa_crud
from app.models.mfa import MFAAuditAction, MFAMethod, MFAPolicy, MFAStatus
from app.models.user import UserRole
from app.schemas.mfa import MFAPolicySchema, PolicySaveStatus
from app.services.device_trust_service import device_trust_service
from app.services.mfa_policy_service import mfa_policy_service


T0 = datetime(2026, 3, 2, 9, 0, 0)


def policy(**overrides) -> MFAPolicy:
    values = dict(
        id=1,
        enforced=False,
        allowed_methods=["authenticator", "email_otp"],
        required_roles=[],
        grace_period_days=7,
        remember_device_days=30,
        effective_since=T0 - timedelta(days=60),
    )
    values.update(overrides)
    return MFAPolicy(**values)


async def save(db, **overrides) -> MFAPolicy:
    row = policy(**overrides)
    db.add(row)
    await db.commit()
    return row


@pytest.mark.unit
class TestMisconfiguration:
    def test_enforced_without_methods(self):
        data = MFAPolicySchema(enforced=True, allowed_methods=[], required_roles=[])
        assert mfa_policy_service.is_misconfigured(data) is True

    def test_roles_without_methods(self):
        data = MFAPolicySchema(enforced=False, allowed_methods=[], required_roles=[UserRole.HR])
        assert mfa_policy_service.is_misconfigured(data) is True

    def test_nothing_in_scope_is_fine_without_methods(self):
        data = MFAPolicySchema(enforced=False, allowed_methods=[], required_roles=[])
        assert mfa_policy_service.is_misconfigured(data) is False

    def test_one_method_is_enough(self):
        data = MFAPolicySchema(enforced=True, allowed_methods=[MFAMethod.EMAIL_OTP])
        assert mfa_policy_service.is_misconfigured(data) is False

    def test_none_is_not_a_method(self):
        with pytest.raises(ValueError):
            MFAPolicySchema(enforced=True, allowed_methods=[MFAMethod.NONE])


@pytest.mark.unit
class TestPolicyAppliesTo:
    def test_enforced_applies_to_everyone(self):
        user = SimpleNamespace(role=UserRole.EMPLOYEE)
        assert mfa_policy_service.policy_applies_to(policy(enforced=True), user) is True

    def test_role_in_scope(self):
        user = SimpleNamespace(role=UserRole.HR)
        assert mfa_policy_service.policy_applies_to(policy(required_roles=["HR", "IT"]), user) is True

    def test_role_out_of_scope(self):
        user = SimpleNamespace(role=UserRole.MANAGER)
        assert mfa_policy_service.policy_applies_to(policy(required_roles=["HR"]), user) is False

    def test_not_enforced_no_roles_never_applies(self):
        for role in UserRole:
            user = SimpleNamespace(role=role)
            assert mfa_policy_service.policy_applies_to(policy(), user) is False


@pytest.mark.unit
class TestAllowedMethods:
    def test_filters_unknown_values(self):
        assert mfa_policy_service.allowed_methods(policy(allowed_methods=["email_otp", "sms"])) == [
            MFAMethod.EMAIL_OTP
        ]

    def test_keeps_display_order(self):
        assert mfa_policy_service.allowed_methods(policy(allowed_methods=["email_otp", "authenticator"])) == [
            MFAMethod.AUTHENTICATOR,
            MFAMethod.EMAIL_OTP,
        ]


@pytest.mark.unit
@pytest.mark.asyncio
class TestGetPolicy:
    async def test_defaults_when_never_saved(self, db_session):
        current = await mfa_policy_service.get_policy(db_session)

        assert current.enforced is False
        assert current.required_roles == ["Admin"]
        assert current.grace_period_days == 7
        assert current.remember_device_days == 30
        # Reading must not create the row
        assert await mfa_policy_crud.get(db_session) is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestSavePolicy:
    async def test_save_creates_row_and_audits(self, db_session, admin_user):
        admin_id = admin_user.id
        data = MFAPolicySchema(
            enforced=True,
            allowed_methods=[MFAMethod.AUTHENTICATOR],
            required_roles=[],
            grace_period_days=3,
            remember_device_days=14,
        )

        outcome = await mfa_policy_service.save_policy(db_session, data, admin_user, now=T0)

        assert outcome.status == PolicySaveStatus.SAVED
        stored = await mfa_policy_crud.get(db_session)
        assert stored.enforced is True
        assert stored.allowed_methods == ["authenticator"]
        assert stored.grace_period_days == 3
        assert stored.remember_device_days == 14
        assert stored.effective_since == T0
        assert stored.updated_by == admin_id

        entries = await mfa_audit_crud.list_for_user(db_session, admin_id)
        assert entries[0].action == MFAAuditAction.POLICY_UPDATED

    async def test_misconfigured_policy_not_saved(self, db_session, admin_user):
        data = MFAPolicySchema(enforced=True, allowed_methods=[], required_roles=[])

        outcome = await mfa_policy_service.save_policy(db_session, data, admin_user, now=T0)

        assert outcome.status == PolicySaveStatus.POLICY_MISCONFIGURED
        assert outcome.policy is None
        assert await mfa_policy_crud.get(db_session) is None

    async def test_scope_change_restarts_grace(self, db_session, admin_user):
        await save(db_session, enforced=False, required_roles=["Admin"])
        later = T0 + timedelta(days=1)

        await mfa_policy_service.save_policy(
            db_session, MFAPolicySchema(enforced=True, required_roles=[UserRole.ADMIN]), admin_user, now=later
        )

        assert (await mfa_policy_crud.get(db_session)).effective_since == later

    async def test_non_scope_change_keeps_grace_anchor(self, db_session, admin_user):
        original = T0 - timedelta(days=60)
        await save(db_session, enforced=True, required_roles=["Admin"], effective_since=original)

        await mfa_policy_service.save_policy(
            db_session,
            MFAPolicySchema(enforced=True, required_roles=[UserRole.ADMIN], remember_device_days=1),
            admin_user,
            now=T0,
        )

        stored = await mfa_policy_crud.get(db_session)
        assert stored.effective_since == original
        assert stored.remember_device_days == 1


@pytest.mark.unit
@pytest.mark.asyncio
class TestRequiresMfa:
    async def test_not_required_when_nothing_in_scope(self, db_session, test_user):
        await save(db_session, enforced=False, required_roles=[])
        assert await mfa_policy_service.requires_mfa(db_session, test_user, now=T0) is False

    async def test_required_when_enforced(self, db_session, test_user):
        await save(db_session, enforced=True)
        assert await mfa_policy_service.requires_mfa(db_session, test_user, now=T0) is True

    async def test_default_policy_covers_admins_only(self, db_session, test_user, admin_user):
        assert await mfa_policy_service.requires_mfa(db_session, admin_user, now=T0) is True
        assert await mfa_policy_service.requires_mfa(db_session, test_user, now=T0) is False

    async def test_trusted_device_skips_mfa(self, db_session, test_user):
        user_id = test_user.id
        await save(db_session, enforced=True)
        await device_trust_service.trust(db_session, user_id, "laptop", 30, now=T0)
        await db_session.commit()

        assert await mfa_policy_service.requires_mfa(db_session, test_user, "laptop", now=T0) is False
        assert await mfa_policy_service.requires_mfa(db_session, test_user, "phone", now=T0) is True
        assert await mfa_policy_service.requires_mfa(
            db_session, test_user, "laptop", now=T0 + timedelta(days=31)
        ) is True


@pytest.mark.unit
@pytest.mark.asyncio
class TestGracePeriod:
    async def test_new_account_in_grace(self, db_session, test_user):
        await save(db_session, enforced=True, effective_since=T0 - timedelta(days=60))
        test_user.created_at = T0 - timedelta(days=2)
        await db_session.commit()

        assert await mfa_policy_service.is_within_grace_period(db_session, test_user, now=T0) is True

    async def test_grace_measured_from_policy_change(self, db_session, test_user):
        # Old account, but enforcement only just started
        await save(db_session, enforced=True, effective_since=T0 - timedelta(days=6, hours=23))
        assert await mfa_policy_service.is_within_grace_period(db_session, test_user, now=T0) is True

    async def test_grace_over(self, db_session, test_user):
        await save(db_session, enforced=True, effective_since=T0 - timedelta(days=7))
        assert await mfa_policy_service.is_within_grace_period(db_session, test_user, now=T0) is False

    async def test_zero_grace(self, db_session, test_user):
        await save(db_session, enforced=True, grace_period_days=0, effective_since=T0)
        assert await mfa_policy_service.is_within_grace_period(db_session, test_user, now=T0) is False

    async def test_active_user_never_in_grace(self, db_session, test_user):
        await save(db_session, enforced=True, effective_since=T0)
        enrollment = await user_mfa_crud.get_or_create(db_session, test_user.id)
        user_mfa_crud.activate(enrollment, MFAMethod.EMAIL_OTP, None, None, T0)
        await db_session.commit()

        assert await mfa_policy_service.is_within_grace_period(db_session, test_user, now=T0) is False


@pytest.mark.unit
@pytest.mark.asyncio
class TestEvaluate:
    async def test_unenrolled_past_grace_must_set_up(self, db_session, test_user):
        await save(db_session, enforced=True)

        outcome = await mfa_policy_service.evaluate(db_session, test_user, now=T0)

        assert outcome.required is True
        assert outcome.grace_period_active is False
        assert outcome.setup_required is True
        assert outcome.enrollment_status == MFAStatus.NOT_ENROLLED
        assert outcome.allowed_methods == [MFAMethod.AUTHENTICATOR, MFAMethod.EMAIL_OTP]

    async def test_unenrolled_in_grace(self, db_session, test_user):
        await save(db_session, enforced=True, effective_since=T0 - timedelta(days=1))

        outcome = await mfa_policy_service.evaluate(db_session, test_user, now=T0)

        assert outcome.required is True
        assert outcome.grace_period_active is True
        assert outcome.setup_required is False

    async def test_active_user_just_verifies(self, db_session, test_user):
        await save(db_session, enforced=True)
        enrollment = await user_mfa_crud.get_or_create(db_session, test_user.id)
        user_mfa_crud.activate(enrollment, MFAMethod.EMAIL_OTP, None, None, T0)
        await db_session.commit()

        outcome = await mfa_policy_service.evaluate(db_session, test_user, now=T0)

        assert outcome.required is True
        assert outcome.setup_required is False
        assert outcome.enrollment_status == MFAStatus.ACTIVE

    async def test_out_of_scope_user(self, db_session, test_user):
        await save(db_session, enforced=False, required_roles=["Admin"])

        outcome = await mfa_policy_service.evaluate(db_session, test_user, now=T0)

        assert outcome.required is False
        assert outcome.setup_required is False
        assert outcome.grace_period_active is False

    async def test_trusted_device_not_required(self, db_session, test_user):
        await save(db_session, enforced=True)
        await device_trust_service.trust(db_session, test_user.id, "laptop", 30, now=T0)
        await db_session.commit()

        outcome = await mfa_policy_service.evaluate(db_session, test_user, "laptop", now=T0)
        assert outcome.required is False
        assert outcome.setup_required is False
