"""SQLAlchemy models package."""

from app.models.user import User, UserRole
from app.models.mfa import (
    MFAAuditLog,
    MFABackupCode,
    MFAEmailOTP,
    MFAFailedAttempt,
    MFAPolicy,
    MFASetupSession,
    TrustedDevice,
    UserMFA,
)

__all__ = [
    "User",
    "UserRole",
    "UserMFA",
    "MFABackupCode",
    "MFASetupSession",
    "MFAEmailOTP",
    "MFAFailedAttempt",
    "TrustedDevice",
    "MFAPolicy",
    "MFAAuditLog",
]
