"""Multi-factor authentication API endpoints.

Verification outcomes are normal results: they come back as HTTP 200 with a
``status`` field. Error status codes are reserved for authentication,
authorization, validation and infrastructure failures.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.crud.mfa import backup_code_crud, trusted_device_crud, user_mfa_crud
from app.crud.user import user_crud
from app.dependencies import (
    get_current_admin_user,
    get_current_user,
    get_mfa_user,
    get_pending_mfa_user,
)
from app.models.mfa import MFAMethod, MFAStatus
from app.models.user import User
from app.schemas.mfa import (
    LoginOtpStatus,
    MFALoginOtpResponse,
    MFAPolicyResponse,
    MFAPolicySchema,
    MFARequirementResponse,
    MFARestartSetupRequest,
    MFASessionRequest,
    MFASessionValidityResponse,
    MFASetupRequest,
    MFASetupResponse,
    MFAStatusResponse,
    MFAVerifyLoginRequest,
    MFAVerifyLoginResponse,
    MFAVerifySetupRequest,
    MFAVerifySetupResponse,
    PolicySaveStatus,
    SetupStartStatus,
    SetupVerifyStatus,
)
from app.services.device_trust_service import device_trust_service
from app.services.mfa_policy_service import mfa_policy_service
from app.services.mfa_setup_service import SetupStartOutcome, mfa_setup_service
from app.services.mfa_verification_service import mfa_verification_service
from app.services.rate_limit_service import get_client_ip, get_rate_limit_service
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()

rate_limit_service = get_rate_limit_service()


def _client_context(request: Request) -> dict:
    return {
        "ip_address": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent"),
    }


def _setup_response(outcome: SetupStartOutcome) -> MFASetupResponse:
    if outcome.status == SetupStartStatus.METHOD_NOT_ALLOWED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="This MFA method is not allowed by the current policy",
        )
    if outcome.status == SetupStartStatus.GENERATION_ERROR:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not generate MFA credentials, please try again",
        )
    return MFASetupResponse(
        session_token=outcome.session_token,
        secret_material=outcome.secret_material,
        expires_at=outcome.expires_at,
    )


def _policy_response(policy) -> MFAPolicyResponse:
    return MFAPolicyResponse(
        enforced=policy.enforced,
        allowed_methods=mfa_policy_service.allowed_methods(policy),
        required_roles=policy.required_roles,
        grace_period_days=policy.grace_period_days,
        remember_device_days=policy.remember_device_days,
        effective_since=policy.effective_since,
        updated_at=policy.updated_at,
        updated_by=policy.updated_by,
    )


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


@router.post("/setup", response_model=MFASetupResponse)
async def start_mfa_setup(
    request: Request,
    data: MFASetupRequest,
    current_user: User = Depends(get_mfa_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Start MFA enrollment.

    Returns a setup session token plus the material needed to finish setup:
    the secret, otpauth URI and QR code for an authenticator app, or the
    masked address an email code was sent to. This is the only response that
    ever contains the secret.
    """
    await rate_limit_service.check_rate_limit(request=request, max_requests=10, window_seconds=300)

    outcome = await mfa_setup_service.start_setup(
        db, current_user, data.method, **_client_context(request)
    )
    return _setup_response(outcome)


@router.post("/setup/restart", response_model=MFASetupResponse)
async def restart_mfa_setup(
    request: Request,
    data: Optional[MFARestartSetupRequest] = None,
    current_user: User = Depends(get_mfa_user),
    db: AsyncSession = Depends(get_db),
):
    """Discard any previous setup session (e.g. an expired one) and start again."""
    await rate_limit_service.check_rate_limit(request=request, max_requests=10, window_seconds=300)

    method = data.method if data else None
    if method == MFAMethod.NONE:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid MFA method")

    outcome = await mfa_setup_service.restart_setup(
        db, current_user, method, **_client_context(request)
    )
    return _setup_response(outcome)


@router.post("/setup/validate", response_model=MFASessionValidityResponse)
async def validate_mfa_setup_session(
    data: MFASessionRequest,
    current_user: User = Depends(get_mfa_user),
    db: AsyncSession = Depends(get_db),
):
    """Check whether a setup session can still be verified. Does not consume it."""
    validity = await mfa_setup_service.validate_session(db, data.session_token, user_id=current_user.id)
    return MFASessionValidityResponse(status=validity)


@router.post("/setup/verify", response_model=MFAVerifySetupResponse)
async def verify_mfa_setup(
    request: Request,
    data: MFAVerifySetupRequest,
    current_user: User = Depends(get_mfa_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Verify the first code for a setup session and activate MFA.

    On ``activated`` the response carries the backup codes (shown once, never
    retrievable again) and an ``mfa_verified`` token the login flow accepts
    in place of a separate login verification.
    """
    await rate_limit_service.check_rate_limit(request=request, max_requests=20, window_seconds=300)

    outcome = await mfa_verification_service.verify_setup(
        db, current_user, data.session_token, data.code, **_client_context(request)
    )
    if outcome.status != SetupVerifyStatus.ACTIVATED:
        return MFAVerifySetupResponse(status=outcome.status)
    return MFAVerifySetupResponse(
        status=outcome.status,
        backup_codes=outcome.backup_codes,
        mfa_token=outcome.mfa_token,
    )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/login/otp", response_model=MFALoginOtpResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_login_otp(
    request: Request,
    current_user: User = Depends(get_pending_mfa_user),
    db: AsyncSession = Depends(get_db),
):
    """Email a fresh sign-in code to an email-enrolled user."""
    await rate_limit_service.check_rate_limit(request=request, max_requests=5, window_seconds=600)

    result = await mfa_verification_service.send_login_otp(db, current_user, **_client_context(request))
    if result == LoginOtpStatus.GENERATION_ERROR:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not generate a verification code, please try again",
        )
    return MFALoginOtpResponse(status=result)


@router.post("/login/verify", response_model=MFAVerifyLoginResponse)
async def verify_mfa_login(
    request: Request,
    data: MFAVerifyLoginRequest,
    current_user: User = Depends(get_pending_mfa_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Verify the second factor during login.

    ``rate_limited`` is returned instead of ``invalid`` once too many recent
    attempts failed, so the client can show a cooldown.
    """
    await rate_limit_service.check_rate_limit(request=request, max_requests=20, window_seconds=300)

    outcome = await mfa_verification_service.verify_login(
        db,
        current_user,
        data.code,
        data.method,
        remember_device=data.remember_device,
        device_fingerprint=data.device_fingerprint,
        device_name=data.device_name,
        **_client_context(request),
    )
    return MFAVerifyLoginResponse(status=outcome.status, mfa_token=outcome.mfa_token)


@router.get("/requirement", response_model=MFARequirementResponse)
async def evaluate_mfa_requirement(
    device_fingerprint: Optional[str] = Query(None, max_length=255),
    current_user: User = Depends(get_mfa_user),
    db: AsyncSession = Depends(get_db),
):
    """Tell the login flow whether this user must pass (or set up) MFA on this device."""
    outcome = await mfa_policy_service.evaluate(db, current_user, device_fingerprint)
    return MFARequirementResponse(
        required=outcome.required,
        grace_period_active=outcome.grace_period_active,
        setup_required=outcome.setup_required,
        enrollment_status=outcome.enrollment_status,
        allowed_methods=outcome.allowed_methods,
    )


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


@router.get("/status", response_model=MFAStatusResponse)
async def get_mfa_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Enrollment summary for the account settings page. Never includes secrets."""
    enrollment = await user_mfa_crud.get(db, current_user.id)
    if enrollment is None:
        return MFAStatusResponse(status=MFAStatus.NOT_ENROLLED, method=MFAMethod.NONE)

    return MFAStatusResponse(
        status=enrollment.status,
        method=enrollment.method,
        activated_at=enrollment.activated_at,
        last_used_at=enrollment.last_used_at,
        backup_codes_remaining=await backup_code_crud.count_unused(db, current_user.id),
        trusted_devices=await trusted_device_crud.count_valid(db, current_user.id, utc_now()),
    )


@router.delete("/devices/{device_fingerprint}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_trusted_device(
    device_fingerprint: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Forget one remembered device. Unknown devices are ignored."""
    await device_trust_service.revoke(db, current_user.id, device_fingerprint)


@router.delete("/devices", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_all_trusted_devices(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Forget every remembered device of the current user."""
    await device_trust_service.revoke_all(db, current_user.id)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.get("/policy", response_model=MFAPolicyResponse)
async def get_mfa_policy(
    current_user: User = Depends(get_current_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the organisation MFA policy (defaults if never saved)."""
    return _policy_response(await mfa_policy_service.get_policy(db))


@router.put("/policy", response_model=MFAPolicyResponse)
async def update_mfa_policy(
    data: MFAPolicySchema,
    current_user: User = Depends(get_current_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Replace the organisation MFA policy.

    Rejected with 422 when enforcement is in scope but no usable method is
    allowed; nothing is saved in that case.
    """
    outcome = await mfa_policy_service.save_policy(db, data, current_user)
    if outcome.status == PolicySaveStatus.POLICY_MISCONFIGURED:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "status": PolicySaveStatus.POLICY_MISCONFIGURED.value,
                "message": "At least one MFA method must be allowed while MFA is required",
            },
        )
    return _policy_response(outcome.policy)


@router.post("/users/{user_id}/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_user_mfa(
    user_id: UUID,
    current_user: User = Depends(get_current_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Force a user to re-enroll: removes their factor, backup codes, setup
    sessions and trusted devices.
    """
    target = await user_crud.get_by_id(db, user_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    await mfa_setup_service.reset_enrollment(db, target.id, current_user)
