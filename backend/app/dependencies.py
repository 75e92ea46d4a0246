"""FastAPI dependencies for authentication and authorization."""

from typing import Iterable
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_MFA_PENDING,
    decode_token,
)
from app.crud.user import user_crud
from app.models.user import User

# HTTP Bearer token scheme
security = HTTPBearer()


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _resolve_user(
    request: Request,
    token: str,
    db: AsyncSession,
    allowed_types: Iterable[str],
) -> User:
    """
    Decode *token*, check its ``type`` claim and load the user it names.

    Raises:
        HTTPException: 401 for a bad/expired/wrong-type token or unknown user,
            403 for an inactive user
    """
    try:
        payload = decode_token(token)
    except JWTError:
        raise _credentials_error()

    if payload.get("type") not in allowed_types:
        raise _credentials_error("Invalid token type")

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        raise _credentials_error()

    user = await user_crud.get_by_id(db, user_id)
    if user is None:
        raise _credentials_error()

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    # Picked up by the error handler for log context
    request.state.user = user
    return user


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Get current fully authenticated user from an ``access`` token.

    Raises:
        HTTPException: If token is invalid or user not found
    """
    return await _resolve_user(request, credentials.credentials, db, {TOKEN_TYPE_ACCESS})


async def get_mfa_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    User allowed to manage MFA enrollment.

    Accepts a full ``access`` token or an ``mfa_pending`` token, so a user
    forced into setup at login can enroll before the login completes.
    """
    return await _resolve_user(
        request, credentials.credentials, db, {TOKEN_TYPE_ACCESS, TOKEN_TYPE_MFA_PENDING}
    )


async def get_pending_mfa_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """User who passed the password step and still owes a second factor."""
    return await _resolve_user(request, credentials.credentials, db, {TOKEN_TYPE_MFA_PENDING})


async def get_current_admin_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """
    Get current user if they are an administrator.

    Raises:
        HTTPException: If user is not an admin
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return current_user
