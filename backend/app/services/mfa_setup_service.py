"""MFA enrollment: setup sessions and the candidate factor they carry.

A setup session binds a not-yet-verified secret (authenticator) or a hashed
one-time code (email) to one user for MFA_SETUP_SESSION_TTL_MINUTES. The raw
session token is returned to the caller once; only its SHA-256 is stored.

Starting a session deletes any earlier session for the same user, so at most
one session per user can ever be verified against.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.metrics import track_email_otp_sent, track_generation_error, track_mfa_setup
from app.crud.mfa import (
    backup_code_crud,
    email_otp_crud,
    failed_attempt_crud,
    mfa_audit_crud,
    setup_session_crud,
    trusted_device_crud,
    user_mfa_crud,
)
from app.models.mfa import MFAAuditAction, MFAMethod, MFASetupSession, MFAStatus
from app.models.user import User
from app.schemas.mfa import SecretMaterial, SessionValidity, SetupStartStatus
from app.services.email_service import email_service
from app.services.mfa_policy_service import mfa_policy_service
from app.services.mfa_service import GenerationError, mfa_service
from app.utils.datetime_utils import utc_now
from app.utils.logging_utils import fingerprint_ref, mask_email_destination, redact_email

logger = logging.getLogger(__name__)


@dataclass
class SetupStartOutcome:
    """Result of StartSetup / RestartSetup."""

    status: SetupStartStatus
    session_token: Optional[str] = None
    secret_material: Optional[SecretMaterial] = None
    expires_at: Optional[datetime] = None


class MFASetupService:
    """Creates, looks up and consumes setup sessions."""

    @staticmethod
    async def start_setup(
        db: AsyncSession,
        user: User,
        method: MFAMethod,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SetupStartOutcome:
        """
        Begin enrollment of *method* for *user*.

        Authenticator: a fresh secret is generated and returned with its
        provisioning URI and QR code. Email: a one-time code is generated,
        bound to the session and mailed to the user.

        An already active enrollment is left untouched until the new factor
        is verified; otherwise the enrollment moves to pending_setup.
        """
        now = now or utc_now()

        policy = await mfa_policy_service.get_policy(db)
        if method not in mfa_policy_service.allowed_methods(policy):
            track_mfa_setup(method.value, SetupStartStatus.METHOD_NOT_ALLOWED.value)
            return SetupStartOutcome(status=SetupStartStatus.METHOD_NOT_ALLOWED)

        try:
            session_token = mfa_service.generate_session_token()
            candidate_secret = None
            email_code = None
            if method == MFAMethod.AUTHENTICATOR:
                candidate_secret = mfa_service.generate_secret()
            else:
                email_code = mfa_service.generate_email_otp()
        except GenerationError as e:
            logger.error("MFA setup aborted for user %s: %s", user.id, e)
            track_generation_error()
            track_mfa_setup(method.value, SetupStartStatus.GENERATION_ERROR.value)
            return SetupStartOutcome(status=SetupStartStatus.GENERATION_ERROR)

        # Only one session per user can be current
        await setup_session_crud.delete_for_user(db, user.id)

        enrollment = await user_mfa_crud.get_or_create(db, user.id)
        if enrollment.status != MFAStatus.ACTIVE:
            user_mfa_crud.mark_pending(enrollment, method)

        expires_at = now + timedelta(minutes=settings.MFA_SETUP_SESSION_TTL_MINUTES)
        await setup_session_crud.create(
            db,
            user_id=user.id,
            token_hash=mfa_service.hash_session_token(session_token),
            method=method,
            expires_at=expires_at,
            candidate_secret=candidate_secret,
            otp_hash=mfa_service.hash_otp(email_code) if email_code else None,
        )
        mfa_audit_crud.record(
            db,
            user.id,
            MFAAuditAction.SETUP_STARTED,
            method=method.value,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await db.commit()

        if method == MFAMethod.AUTHENTICATOR:
            uri = mfa_service.get_totp_uri(candidate_secret, user.email)
            material = SecretMaterial(
                method=method,
                secret=candidate_secret,
                provisioning_uri=uri,
                qr_code_png_base64=mfa_service.generate_qr_code(uri),
            )
        else:
            await email_service.send_mfa_code_email(
                user.email,
                email_code,
                purpose="setup",
                valid_minutes=settings.MFA_EMAIL_OTP_TTL_MINUTES,
            )
            track_email_otp_sent("setup")
            material = SecretMaterial(
                method=method,
                email_destination=mask_email_destination(user.email),
            )

        logger.info(
            "MFA setup started for %s (method=%s, session=%s)",
            redact_email(user.email),
            method.value,
            fingerprint_ref(session_token),
        )
        track_mfa_setup(method.value, SetupStartStatus.STARTED.value)
        return SetupStartOutcome(
            status=SetupStartStatus.STARTED,
            session_token=session_token,
            secret_material=material,
            expires_at=expires_at,
        )

    @staticmethod
    async def restart_setup(
        db: AsyncSession,
        user: User,
        method: Optional[MFAMethod] = None,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SetupStartOutcome:
        """
        Drop whatever session the user had and start a new one.

        Without *method* the new session uses the method of the most recent
        one, expired or not, else the authenticator. The outcome is identical
        whether or not a previous session existed.
        """
        if method is None:
            previous = await setup_session_crud.get_latest_for_user(db, user.id)
            method = previous.method if previous is not None else MFAMethod.AUTHENTICATOR

        await setup_session_crud.delete_for_user(db, user.id)

        return await MFASetupService.start_setup(
            db, user, method, now=now, ip_address=ip_address, user_agent=user_agent
        )

    @staticmethod
    async def get_active_session(
        db: AsyncSession,
        session_token: str,
        now: Optional[datetime] = None,
        user_id: Optional[UUID] = None,
    ) -> Optional[MFASetupSession]:
        """Return the session if it exists, is unconsumed and has not expired."""
        if not session_token:
            return None
        now = now or utc_now()
        session = await setup_session_crud.get_by_token_hash(
            db, mfa_service.hash_session_token(session_token)
        )
        if session is None or not session.is_usable_at(now):
            return None
        if user_id is not None and session.user_id != user_id:
            return None
        return session

    @staticmethod
    async def validate_session(
        db: AsyncSession,
        session_token: str,
        now: Optional[datetime] = None,
        user_id: Optional[UUID] = None,
    ) -> SessionValidity:
        """Pure lookup; never consumes the session."""
        session = await MFASetupService.get_active_session(db, session_token, now=now, user_id=user_id)
        return SessionValidity.VALID if session else SessionValidity.EXPIRED

    @staticmethod
    async def consume_session(
        db: AsyncSession,
        session: MFASetupSession,
        now: Optional[datetime] = None,
    ) -> bool:
        """Atomically consume *session*. Only one caller can ever get True."""
        return await setup_session_crud.consume(db, session.id, now or utc_now())

    @staticmethod
    async def reset_enrollment(db: AsyncSession, user_id: UUID, admin: User) -> None:
        """
        Administrative reset: the user is back to not_enrolled and must set
        MFA up again. Backup codes, setup sessions, pending email codes and
        trusted devices are all removed.
        """
        enrollment = await user_mfa_crud.get_or_create(db, user_id)
        previous_method = enrollment.method.value if enrollment.method else None
        user_mfa_crud.reset(enrollment)
        await backup_code_crud.delete_all(db, user_id)
        await setup_session_crud.delete_for_user(db, user_id)
        await email_otp_crud.delete_for_user(db, user_id)
        await trusted_device_crud.delete_all(db, user_id)
        await failed_attempt_crud.clear(db, user_id)
        mfa_audit_crud.record(
            db,
            user_id,
            MFAAuditAction.RESET,
            method=previous_method,
            details={"reset_by": str(admin.id)},
        )
        await db.commit()
        logger.warning("MFA reset for user %s by admin %s", user_id, admin.id)


mfa_setup_service = MFASetupService()
