"""MFA Pydantic schemas and outcome enums."""

import enum
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.models.mfa import MFAMethod, MFAStatus
from app.models.user import UserRole


class LoginMethod(str, enum.Enum):
    """Ways a code can be submitted at login."""

    AUTHENTICATOR = "authenticator"
    EMAIL_OTP = "email_otp"
    BACKUP = "backup"


class SetupStartStatus(str, enum.Enum):
    STARTED = "started"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    GENERATION_ERROR = "generation_error"


class SetupVerifyStatus(str, enum.Enum):
    ACTIVATED = "activated"
    INVALID = "invalid"
    SESSION_EXPIRED = "session_expired"
    RATE_LIMITED = "rate_limited"
    GENERATION_ERROR = "generation_error"


class LoginVerifyStatus(str, enum.Enum):
    VERIFIED = "verified"
    INVALID = "invalid"
    RATE_LIMITED = "rate_limited"


class LoginOtpStatus(str, enum.Enum):
    """Same answer for enrolled and non-enrolled users."""

    SENT = "sent"
    GENERATION_ERROR = "generation_error"


class SessionValidity(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"


class PolicySaveStatus(str, enum.Enum):
    SAVED = "saved"
    POLICY_MISCONFIGURED = "policy_misconfigured"


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


class MFASetupRequest(BaseModel):
    """Start enrollment for one method."""

    method: MFAMethod = MFAMethod.AUTHENTICATOR

    @field_validator("method")
    @classmethod
    def reject_none(cls, v: MFAMethod) -> MFAMethod:
        if v == MFAMethod.NONE:
            raise ValueError("method must be 'authenticator' or 'email_otp'")
        return v


class MFARestartSetupRequest(BaseModel):
    method: Optional[MFAMethod] = None


class SecretMaterial(BaseModel):
    """What the setup UI needs to render. Present only in the setup response."""

    method: MFAMethod
    secret: Optional[str] = None  # Base32, for manual entry
    provisioning_uri: Optional[str] = None
    qr_code_png_base64: Optional[str] = None
    email_destination: Optional[str] = None  # masked address the code went to


class MFASetupResponse(BaseModel):
    session_token: str
    secret_material: SecretMaterial
    expires_at: datetime


class MFASessionRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=256)


class MFASessionValidityResponse(BaseModel):
    status: SessionValidity


class MFAVerifySetupRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=32)


class MFAVerifySetupResponse(BaseModel):
    """
    ``backup_codes`` and ``mfa_token`` are only present when activated.

    The backup codes are shown here once and can never be retrieved again.
    """

    status: SetupVerifyStatus
    backup_codes: Optional[List[str]] = None
    mfa_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class MFAVerifyLoginRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    method: LoginMethod
    remember_device: bool = False
    device_fingerprint: Optional[str] = Field(None, max_length=255)
    device_name: Optional[str] = Field(None, max_length=255)


class MFAVerifyLoginResponse(BaseModel):
    status: LoginVerifyStatus
    mfa_token: Optional[str] = None


class MFALoginOtpResponse(BaseModel):
    status: LoginOtpStatus


class MFARequirementResponse(BaseModel):
    required: bool
    grace_period_active: bool
    setup_required: bool
    enrollment_status: MFAStatus
    allowed_methods: List[MFAMethod]


class MFAStatusResponse(BaseModel):
    status: MFAStatus
    method: MFAMethod
    activated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    backup_codes_remaining: int = 0
    trusted_devices: int = 0


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class MFAPolicySchema(BaseModel):
    """Administrator-editable MFA policy."""

    enforced: bool = False
    allowed_methods: List[MFAMethod] = Field(
        default_factory=lambda: [MFAMethod.AUTHENTICATOR, MFAMethod.EMAIL_OTP]
    )
    required_roles: List[UserRole] = Field(default_factory=lambda: [UserRole.ADMIN])
    grace_period_days: int = Field(7, ge=0, le=365)
    remember_device_days: int = Field(30, ge=0, le=365)

    @field_validator("allowed_methods")
    @classmethod
    def dedupe_methods(cls, v: List[MFAMethod]) -> List[MFAMethod]:
        if MFAMethod.NONE in v:
            raise ValueError("'none' is not an MFA method")
        return list(dict.fromkeys(v))

    @field_validator("required_roles")
    @classmethod
    def dedupe_roles(cls, v: List[UserRole]) -> List[UserRole]:
        return list(dict.fromkeys(v))


class MFAPolicyResponse(MFAPolicySchema):
    effective_since: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[UUID] = None
