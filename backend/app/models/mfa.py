"""Multi-Factor Authentication models."""

import enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.services.encryption_service import EncryptedString
from app.utils.datetime_utils import utc_now_lambda


class MFAStatus(str, enum.Enum):
    """Enrollment lifecycle: not_enrolled -> pending_setup -> active."""

    NOT_ENROLLED = "not_enrolled"
    PENDING_SETUP = "pending_setup"
    ACTIVE = "active"


class MFAMethod(str, enum.Enum):
    """Primary second factor a user can enroll."""

    AUTHENTICATOR = "authenticator"
    EMAIL_OTP = "email_otp"
    NONE = "none"


class MFAAuditAction(str, enum.Enum):
    """Events recorded in the MFA audit trail."""

    SETUP_STARTED = "setup_started"
    SETUP_COMPLETED = "setup_completed"
    VERIFY_SUCCESS = "verify_success"
    VERIFY_FAIL = "verify_fail"
    RATE_LIMITED = "rate_limited"
    BACKUP_CODE_USED = "backup_code_used"
    EMAIL_OTP_SENT = "email_otp_sent"
    RESET = "reset"
    DEVICE_TRUSTED = "device_trusted"
    DEVICE_REVOKED = "device_revoked"
    POLICY_UPDATED = "policy_updated"


class UserMFA(Base):
    """Per-user MFA enrollment."""

    __tablename__ = "user_mfa"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    status = Column(SQLEnum(MFAStatus, name="mfa_status"), nullable=False, default=MFAStatus.NOT_ENROLLED)
    method = Column(SQLEnum(MFAMethod, name="mfa_method"), nullable=False, default=MFAMethod.NONE)

    # TOTP secret (encrypted); only set for the authenticator method
    secret = Column(EncryptedString(512), nullable=True)

    # Highest TOTP time step accepted so far; a step is never accepted twice
    last_totp_step = Column(BigInteger, nullable=True)

    # Timestamps
    activated_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)
    updated_at = Column(DateTime, default=utc_now_lambda, onupdate=utc_now_lambda, nullable=False)

    # Relationships
    user = relationship("User", back_populates="mfa")

    @property
    def is_active(self) -> bool:
        return self.status == MFAStatus.ACTIVE

    def __repr__(self):
        return f"<UserMFA user={self.user_id} status={self.status} method={self.method}>"


class MFABackupCode(Base):
    """Single-use recovery code. Only the argon2 hash is stored."""

    __tablename__ = "mfa_backup_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code_hash = Column(String(255), nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def __repr__(self):
        return f"<MFABackupCode user={self.user_id} used={self.is_used}>"


class MFASetupSession(Base):
    """Short-lived binding of a candidate factor to a user during enrollment."""

    __tablename__ = "mfa_setup_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # SHA-256 hex digest of the raw session token; the raw token is never stored
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    method = Column(SQLEnum(MFAMethod, name="mfa_method"), nullable=False)
    candidate_secret = Column(EncryptedString(512), nullable=True)
    otp_hash = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)

    def is_usable_at(self, now) -> bool:
        """A session can be verified against once, and only before it expires."""
        return self.consumed_at is None and now < self.expires_at

    def __repr__(self):
        return f"<MFASetupSession user={self.user_id} method={self.method}>"


class MFAEmailOTP(Base):
    """Login-time one-time code delivered by email."""

    __tablename__ = "mfa_email_otps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code_hash = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)

    def __repr__(self):
        return f"<MFAEmailOTP user={self.user_id}>"


class MFAFailedAttempt(Base):
    """One failed verification. The throttle counts rows inside a rolling window."""

    __tablename__ = "mfa_failed_attempts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    attempted_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_mfa_failed_attempts_user_attempted", "user_id", "attempted_at"),
    )


class TrustedDevice(Base):
    """A device the user asked us to remember, exempt from MFA until trusted_until."""

    __tablename__ = "mfa_trusted_devices"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    device_fingerprint = Column(String(255), nullable=False)
    device_name = Column(String(255), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    trusted_until = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False)
    updated_at = Column(DateTime, default=utc_now_lambda, onupdate=utc_now_lambda, nullable=False)

    user = relationship("User", back_populates="trusted_devices")

    __table_args__ = (
        UniqueConstraint("user_id", "device_fingerprint", name="uq_trusted_device_user_fingerprint"),
    )

    def __repr__(self):
        return f"<TrustedDevice user={self.user_id} until={self.trusted_until}>"


class MFAPolicy(Base):
    """Organisation-wide MFA policy. A single row with id=1."""

    __tablename__ = "mfa_policy"

    id = Column(Integer, primary_key=True, default=1)
    enforced = Column(Boolean, default=False, nullable=False)
    allowed_methods = Column(JSON, nullable=False, default=list)
    required_roles = Column(JSON, nullable=False, default=list)
    grace_period_days = Column(Integer, default=7, nullable=False)
    remember_device_days = Column(Integer, default=30, nullable=False)

    # When enforcement scope last changed; grace periods are measured from here
    effective_since = Column(DateTime, default=utc_now_lambda, nullable=False)
    updated_at = Column(DateTime, default=utc_now_lambda, onupdate=utc_now_lambda, nullable=False)
    updated_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self):
        return f"<MFAPolicy enforced={self.enforced} roles={self.required_roles}>"


class MFAAuditLog(Base):
    """Append-only record of MFA events."""

    __tablename__ = "mfa_audit_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    action = Column(SQLEnum(MFAAuditAction, name="mfa_audit_action"), nullable=False)
    method = Column(String(32), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utc_now_lambda, nullable=False, index=True)

    __table_args__ = (
        Index("ix_mfa_audit_log_user_action", "user_id", "action"),
    )

    def __repr__(self):
        return f"<MFAAuditLog user={self.user_id} action={self.action}>"
