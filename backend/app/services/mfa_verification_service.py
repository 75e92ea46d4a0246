"""MFA verification for enrollment and for login.

Setup verification and login verification share one per-user failure
history. Each failure is stored with its timestamp; once
MFA_MAX_FAILED_ATTEMPTS of them fall inside the trailing
MFA_FAILED_ATTEMPT_WINDOW_MINUTES the user is locked out of both until the
oldest counted failure ages out. A locked user gets ``rate_limited`` even
for a correct code, and locked-out submissions are not counted. Success
clears the history.

Every result is a status value. ``invalid`` covers every kind of mismatch
(wrong code, expired email code, replayed TOTP step, spent backup code) so the
caller cannot learn which check failed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.logging_config import log_mfa_event
from app.core.metrics import (
    track_email_otp_sent,
    track_generation_error,
    track_mfa_setup,
    track_mfa_verification,
)
from app.core.security import create_mfa_verified_token
from app.crud.mfa import (
    backup_code_crud,
    email_otp_crud,
    failed_attempt_crud,
    mfa_audit_crud,
    user_mfa_crud,
)
from app.models.mfa import MFAAuditAction, MFAMethod, MFAStatus, UserMFA
from app.models.user import User
from app.schemas.mfa import LoginMethod, LoginOtpStatus, LoginVerifyStatus, SetupVerifyStatus
from app.services.device_trust_service import device_trust_service
from app.services.email_service import email_service
from app.services.mfa_policy_service import mfa_policy_service
from app.services.mfa_service import GenerationError, mfa_service
from app.services.mfa_setup_service import mfa_setup_service
from app.utils.datetime_utils import to_unix_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SetupVerifyOutcome:
    """``backup_codes`` are plaintext and returned exactly once, on activation."""

    status: SetupVerifyStatus
    backup_codes: Optional[List[str]] = None
    mfa_token: Optional[str] = None


@dataclass
class LoginVerifyOutcome:
    status: LoginVerifyStatus
    mfa_token: Optional[str] = None


class MFAVerificationService:
    """Checks submitted codes and drives the enrollment to active."""

    # ------------------------------------------------------------------
    # Throttling
    # ------------------------------------------------------------------

    @staticmethod
    def _window_cutoff(now: datetime) -> datetime:
        return now - timedelta(minutes=settings.MFA_FAILED_ATTEMPT_WINDOW_MINUTES)

    @staticmethod
    async def is_rate_limited(db: AsyncSession, user_id: UUID, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        recent = await failed_attempt_crud.count_recent(
            db, user_id, MFAVerificationService._window_cutoff(now)
        )
        return recent >= settings.MFA_MAX_FAILED_ATTEMPTS

    @staticmethod
    async def _register_failure(db: AsyncSession, user_id: UUID, now: datetime) -> int:
        failed = await failed_attempt_crud.record_failure(
            db, user_id, now, MFAVerificationService._window_cutoff(now)
        )
        if failed >= settings.MFA_MAX_FAILED_ATTEMPTS:
            logger.warning("MFA attempt limit reached for user %s (%d failures)", user_id, failed)
        return failed

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @staticmethod
    async def verify_setup(
        db: AsyncSession,
        user: User,
        session_token: str,
        code: str,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SetupVerifyOutcome:
        """
        Check *code* against the candidate factor of the setup session.

        A missing, foreign, consumed or expired session is ``session_expired``
        whatever the code. A mismatch leaves the session usable. On a match
        the session is consumed atomically (a racing duplicate request sees
        ``session_expired``), the enrollment becomes active and a new set of
        backup codes replaces any old one.
        """
        now = now or utc_now()

        session = await mfa_setup_service.get_active_session(db, session_token, now=now, user_id=user.id)
        if session is None:
            track_mfa_setup("unknown", SetupVerifyStatus.SESSION_EXPIRED.value)
            return SetupVerifyOutcome(status=SetupVerifyStatus.SESSION_EXPIRED)

        method = session.method
        if await MFAVerificationService.is_rate_limited(db, user.id, now):
            mfa_audit_crud.record(
                db, user.id, MFAAuditAction.RATE_LIMITED, method=method.value,
                ip_address=ip_address, user_agent=user_agent, details={"stage": "setup"},
            )
            await db.commit()
            track_mfa_setup(method.value, SetupVerifyStatus.RATE_LIMITED.value)
            return SetupVerifyOutcome(status=SetupVerifyStatus.RATE_LIMITED)

        totp_step = None
        if method == MFAMethod.AUTHENTICATOR:
            totp_step = mfa_service.match_totp(session.candidate_secret, code, to_unix_timestamp(now))
            matched = totp_step is not None
        else:
            issued_at = session.expires_at - timedelta(minutes=settings.MFA_SETUP_SESSION_TTL_MINUTES)
            code_valid_until = issued_at + timedelta(minutes=settings.MFA_EMAIL_OTP_TTL_MINUTES)
            matched = (
                session.otp_hash is not None
                and now < code_valid_until
                and mfa_service.otp_matches(code, session.otp_hash)
            )

        if not matched:
            failed = await MFAVerificationService._register_failure(db, user.id, now)
            mfa_audit_crud.record(
                db, user.id, MFAAuditAction.VERIFY_FAIL, method=method.value,
                ip_address=ip_address, user_agent=user_agent,
                details={"stage": "setup", "failed_count": failed},
            )
            await db.commit()
            log_mfa_event(logger, "mfa_setup_verify", user.id, method.value, "invalid", failed_count=failed)
            track_mfa_setup(method.value, SetupVerifyStatus.INVALID.value)
            return SetupVerifyOutcome(status=SetupVerifyStatus.INVALID)

        try:
            backup_codes = mfa_service.generate_backup_codes()
        except GenerationError as e:
            logger.error("Backup code generation failed for user %s: %s", user.id, e)
            await db.rollback()
            track_generation_error()
            track_mfa_setup(method.value, SetupVerifyStatus.GENERATION_ERROR.value)
            return SetupVerifyOutcome(status=SetupVerifyStatus.GENERATION_ERROR)

        candidate_secret = session.candidate_secret
        if not await mfa_setup_service.consume_session(db, session, now=now):
            await db.rollback()
            track_mfa_setup(method.value, SetupVerifyStatus.SESSION_EXPIRED.value)
            return SetupVerifyOutcome(status=SetupVerifyStatus.SESSION_EXPIRED)

        enrollment = await user_mfa_crud.get_or_create(db, user.id)
        user_mfa_crud.activate(enrollment, method, candidate_secret, totp_step, now)
        await backup_code_crud.replace_all(
            db, user.id, [mfa_service.hash_backup_code(c) for c in backup_codes]
        )
        await email_otp_crud.delete_for_user(db, user.id)
        await failed_attempt_crud.clear(db, user.id)
        mfa_audit_crud.record(
            db, user.id, MFAAuditAction.SETUP_COMPLETED, method=method.value,
            ip_address=ip_address, user_agent=user_agent,
        )
        await db.commit()

        log_mfa_event(logger, "mfa_setup_verify", user.id, method.value, "activated")
        track_mfa_setup(method.value, SetupVerifyStatus.ACTIVATED.value)
        return SetupVerifyOutcome(
            status=SetupVerifyStatus.ACTIVATED,
            backup_codes=backup_codes,
            mfa_token=create_mfa_verified_token(str(user.id), method.value),
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @staticmethod
    async def _check_authenticator(db: AsyncSession, enrollment: UserMFA, code: str, now: datetime) -> bool:
        if enrollment.method != MFAMethod.AUTHENTICATOR or not enrollment.secret:
            return False
        step = mfa_service.match_totp(enrollment.secret, code, to_unix_timestamp(now))
        if step is None:
            return False
        # Replay guard: each time step is accepted at most once per user
        return await user_mfa_crud.advance_totp_step(db, enrollment.user_id, step)

    @staticmethod
    async def _check_email_otp(db: AsyncSession, enrollment: UserMFA, code: str, now: datetime) -> bool:
        if enrollment.method != MFAMethod.EMAIL_OTP:
            return False
        otp = await email_otp_crud.get_latest_unconsumed(db, enrollment.user_id)
        if otp is None:
            return False
        # Any attempt burns the code, right or wrong
        if not await email_otp_crud.consume(db, otp.id, now):
            return False
        return otp.expires_at > now and mfa_service.otp_matches(code, otp.code_hash)

    @staticmethod
    async def _check_backup_code(db: AsyncSession, enrollment: UserMFA, code: str, now: datetime) -> bool:
        if not mfa_service.looks_like_backup_code(code):
            return False
        for stored in await backup_code_crud.list_unused(db, enrollment.user_id):
            if mfa_service.verify_backup_code(code, stored.code_hash):
                # Only one concurrent redeemer wins the conditional update
                return await backup_code_crud.mark_used(db, stored.id, now)
        return False

    @staticmethod
    async def verify_login(
        db: AsyncSession,
        user: User,
        code: str,
        method: LoginMethod,
        remember_device: bool = False,
        device_fingerprint: Optional[str] = None,
        device_name: Optional[str] = None,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginVerifyOutcome:
        """
        Verify the second factor at login.

        Args:
            user: User who passed the password step
            code: Submitted code (TOTP, email code or backup code)
            method: Which kind of code was submitted
            remember_device: Trust *device_fingerprint* on success
            device_fingerprint: Client supplied device identifier

        Returns:
            ``verified`` with an ``mfa_verified`` token, ``invalid`` or
            ``rate_limited``.
        """
        now = now or utc_now()

        if await MFAVerificationService.is_rate_limited(db, user.id, now):
            mfa_audit_crud.record(
                db, user.id, MFAAuditAction.RATE_LIMITED, method=method.value,
                ip_address=ip_address, user_agent=user_agent, details={"stage": "login"},
            )
            await db.commit()
            log_mfa_event(logger, "mfa_login_verify", user.id, method.value, "rate_limited")
            track_mfa_verification(method.value, LoginVerifyStatus.RATE_LIMITED.value)
            return LoginVerifyOutcome(status=LoginVerifyStatus.RATE_LIMITED)

        enrollment = await user_mfa_crud.get(db, user.id)
        verified = False
        if enrollment is not None and enrollment.status == MFAStatus.ACTIVE:
            if method == LoginMethod.AUTHENTICATOR:
                verified = await MFAVerificationService._check_authenticator(db, enrollment, code, now)
            elif method == LoginMethod.EMAIL_OTP:
                verified = await MFAVerificationService._check_email_otp(db, enrollment, code, now)
            else:
                verified = await MFAVerificationService._check_backup_code(db, enrollment, code, now)

        if not verified:
            failed = await MFAVerificationService._register_failure(db, user.id, now)
            mfa_audit_crud.record(
                db, user.id, MFAAuditAction.VERIFY_FAIL, method=method.value,
                ip_address=ip_address, user_agent=user_agent,
                details={"stage": "login", "failed_count": failed},
            )
            await db.commit()
            log_mfa_event(logger, "mfa_login_verify", user.id, method.value, "invalid", failed_count=failed)
            track_mfa_verification(method.value, LoginVerifyStatus.INVALID.value)
            return LoginVerifyOutcome(status=LoginVerifyStatus.INVALID)

        await failed_attempt_crud.clear(db, user.id)
        await user_mfa_crud.touch_last_used(db, user.id, now)
        mfa_audit_crud.record(
            db,
            user.id,
            MFAAuditAction.BACKUP_CODE_USED if method == LoginMethod.BACKUP else MFAAuditAction.VERIFY_SUCCESS,
            method=method.value,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        if remember_device and device_fingerprint:
            policy = await mfa_policy_service.get_policy(db)
            await device_trust_service.trust(
                db,
                user.id,
                device_fingerprint,
                policy.remember_device_days,
                now=now,
                device_name=device_name,
                ip_address=ip_address,
                user_agent=user_agent,
            )

        await db.commit()

        if method == LoginMethod.BACKUP:
            remaining = await backup_code_crud.count_unused(db, user.id)
            logger.info("Backup code redeemed by user %s, %d remaining", user.id, remaining)

        log_mfa_event(logger, "mfa_login_verify", user.id, method.value, "verified")
        track_mfa_verification(method.value, LoginVerifyStatus.VERIFIED.value)
        return LoginVerifyOutcome(
            status=LoginVerifyStatus.VERIFIED,
            mfa_token=create_mfa_verified_token(str(user.id), method.value),
        )

    @staticmethod
    async def send_login_otp(
        db: AsyncSession,
        user: User,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOtpStatus:
        """
        Issue a fresh login code to an email-enrolled user.

        Earlier unconsumed codes are invalidated so only the newest one can
        match. For users not enrolled with email this does nothing, and the
        result is the same ``sent`` so enrollment is not disclosed.
        """
        now = now or utc_now()

        enrollment = await user_mfa_crud.get(db, user.id)
        if enrollment is None or enrollment.status != MFAStatus.ACTIVE or enrollment.method != MFAMethod.EMAIL_OTP:
            logger.debug("Login code not sent, user %s is not email-enrolled", user.id)
            return LoginOtpStatus.SENT

        try:
            code = mfa_service.generate_email_otp()
        except GenerationError as e:
            logger.error("Login code generation failed for user %s: %s", user.id, e)
            track_generation_error()
            return LoginOtpStatus.GENERATION_ERROR

        await email_otp_crud.invalidate_for_user(db, user.id, now)
        await email_otp_crud.create(
            db,
            user.id,
            mfa_service.hash_otp(code),
            expires_at=now + timedelta(minutes=settings.MFA_EMAIL_OTP_TTL_MINUTES),
        )
        mfa_audit_crud.record(
            db, user.id, MFAAuditAction.EMAIL_OTP_SENT, method=MFAMethod.EMAIL_OTP.value,
            ip_address=ip_address, user_agent=user_agent,
        )
        await db.commit()

        await email_service.send_mfa_code_email(
            user.email, code, purpose="login", valid_minutes=settings.MFA_EMAIL_OTP_TTL_MINUTES
        )
        track_email_otp_sent("login")
        log_mfa_event(logger, "mfa_login_otp_sent", user.id, MFAMethod.EMAIL_OTP.value)
        return LoginOtpStatus.SENT


mfa_verification_service = MFAVerificationService()
