"""JWT helpers shared with the login flow.

The password login itself lives outside this service. It hands us one of two
token types and we hand back a third:

* ``access``       - a fully authenticated session
* ``mfa_pending``  - password accepted, second factor still owed
* ``mfa_verified`` - short-lived assertion that the second factor was passed
"""

from datetime import timedelta
from typing import Any, Optional

from jose import jwt

from app.config import settings
from app.utils.datetime_utils import utc_now

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_MFA_PENDING = "mfa_pending"
TOKEN_TYPE_MFA_VERIFIED = "mfa_verified"


def _encode(data: dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    to_encode.update({"exp": utc_now() + expires_delta, "type": token_type})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in token
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    return _encode(
        data,
        TOKEN_TYPE_ACCESS,
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_mfa_pending_token(user_id: str) -> str:
    """Token issued by the login flow after the password check, before MFA."""
    return _encode(
        {"sub": user_id},
        TOKEN_TYPE_MFA_PENDING,
        timedelta(minutes=settings.MFA_PENDING_TOKEN_EXPIRE_MINUTES),
    )


def create_mfa_verified_token(user_id: str, method: str) -> str:
    """
    Assertion returned once the second factor has been verified.

    The login flow exchanges it for a full session; ``amr`` records which
    factor was used.
    """
    return _encode(
        {"sub": user_id, "amr": ["pwd", method]},
        TOKEN_TYPE_MFA_VERIFIED,
        timedelta(minutes=settings.MFA_VERIFIED_TOKEN_EXPIRE_MINUTES),
    )


def decode_token(token: str) -> dict[str, Any]:
    """
    Decode and verify a JWT token.

    Raises:
        JWTError: If token is invalid or expired
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
