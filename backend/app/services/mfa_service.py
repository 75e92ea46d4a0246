"""Multi-Factor Authentication secret and code generation.

Everything random in this module comes from the OS CSPRNG via ``secrets``.
If that source is unavailable we raise :class:`GenerationError` instead of
degrading to anything weaker.
"""

import base64
import hashlib
import hmac
import io
import secrets
import string
from base64 import b64encode
from typing import List, Optional

import pyotp
import qrcode
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from app.config import settings

TOTP_DIGITS = 6
TOTP_INTERVAL_SECONDS = 30
TOTP_SECRET_BYTES = 20  # 160 bits, the RFC 4226 recommended length
EMAIL_OTP_DIGITS = 6
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

_password_hasher = PasswordHasher()


class GenerationError(Exception):
    """The random source failed; the current request cannot continue."""


def _random_bytes(n: int) -> bytes:
    try:
        data = secrets.token_bytes(n)
    except (NotImplementedError, OSError) as e:
        raise GenerationError(f"Secure random source unavailable: {e}") from e
    if len(data) != n:
        raise GenerationError("Secure random source returned short output")
    return data


def _random_below(n: int) -> int:
    try:
        return secrets.randbelow(n)
    except (NotImplementedError, OSError) as e:
        raise GenerationError(f"Secure random source unavailable: {e}") from e


class MFAService:
    """Service for generating and checking MFA secrets and codes."""

    @staticmethod
    def generate_secret() -> str:
        """Generate a new 160-bit TOTP secret, Base32 encoded (32 chars, no padding)."""
        return base64.b32encode(_random_bytes(TOTP_SECRET_BYTES)).decode("ascii")

    @staticmethod
    def get_totp_uri(secret: str, email: str, issuer: Optional[str] = None) -> str:
        """
        Generate TOTP provisioning URI for QR code.

        Args:
            secret: TOTP secret
            email: Account name shown in the authenticator app
            issuer: Application name

        Returns:
            ``otpauth://totp/<issuer>:<account>?secret=...&issuer=...``
        """
        return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS).provisioning_uri(
            name=email,
            issuer_name=issuer or settings.MFA_ISSUER_NAME,
        )

    @staticmethod
    def generate_qr_code(uri: str) -> str:
        """
        Generate QR code image as base64 string.

        Args:
            uri: TOTP provisioning URI

        Returns:
            Base64-encoded QR code image (PNG)
        """
        qr = qrcode.QRCode(version=1, box_size=10, border=4)
        qr.add_data(uri)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        buffer.seek(0)

        return b64encode(buffer.getvalue()).decode()

    @staticmethod
    def time_step(timestamp: int) -> int:
        """TOTP counter for a POSIX timestamp."""
        return int(timestamp) // TOTP_INTERVAL_SECONDS

    @staticmethod
    def compute_totp_code(secret: str, timestamp: int) -> str:
        """Compute the 6-digit TOTP code for the 30-second step containing *timestamp*."""
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS)
        return totp.generate_otp(MFAService.time_step(timestamp))

    @staticmethod
    def match_totp(
        secret: str,
        code: str,
        timestamp: int,
        valid_window: Optional[int] = None,
    ) -> Optional[int]:
        """
        Check a TOTP code with clock-drift tolerance.

        Args:
            secret: TOTP secret
            code: Submitted 6-digit code
            timestamp: Server time (POSIX seconds)
            valid_window: Steps tolerated either side of the current one

        Returns:
            The time step the code belongs to, or None if it matches none.
            Callers use the step for replay protection.
        """
        code = (code or "").strip()
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return None

        window = settings.MFA_TOTP_VALID_WINDOW if valid_window is None else valid_window
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS)
        current = MFAService.time_step(timestamp)

        # Current step first so the common case wins ties
        offsets = [0] + [o for i in range(1, window + 1) for o in (-i, i)]
        for offset in offsets:
            step = current + offset
            if step < 0:
                continue
            if hmac.compare_digest(totp.generate_otp(step), code):
                return step
        return None

    @staticmethod
    def generate_email_otp() -> str:
        """Uniformly random 6-digit code, zero padded."""
        return f"{_random_below(10 ** EMAIL_OTP_DIGITS):0{EMAIL_OTP_DIGITS}d}"

    @staticmethod
    def hash_otp(code: str) -> str:
        """
        Keyed hash of a short numeric code.

        A plain SHA-256 of six digits is reversible by enumeration, so the
        digest is an HMAC keyed with the application secret.
        """
        return hmac.new(settings.SECRET_KEY.encode(), code.strip().encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def otp_matches(code: str, code_hash: str) -> bool:
        return hmac.compare_digest(MFAService.hash_otp(code), code_hash)

    @staticmethod
    def generate_backup_codes(count: Optional[int] = None) -> List[str]:
        """
        Generate backup codes for MFA recovery.

        Args:
            count: Number of backup codes to generate (default MFA_BACKUP_CODE_COUNT)

        Returns:
            Distinct 8-character uppercase alphanumeric codes
        """
        count = settings.MFA_BACKUP_CODE_COUNT if count is None else count
        codes: List[str] = []
        seen = set()
        while len(codes) < count:
            code = "".join(
                BACKUP_CODE_ALPHABET[_random_below(len(BACKUP_CODE_ALPHABET))]
                for _ in range(BACKUP_CODE_LENGTH)
            )
            if code in seen:
                continue
            seen.add(code)
            codes.append(code)
        return codes

    @staticmethod
    def normalize_backup_code(code: str) -> str:
        """Uppercase and strip separators so ``abcd-1234`` matches ``ABCD1234``."""
        return (code or "").replace("-", "").replace(" ", "").strip().upper()

    @staticmethod
    def looks_like_backup_code(code: str) -> bool:
        normalized = MFAService.normalize_backup_code(code)
        return len(normalized) == BACKUP_CODE_LENGTH and all(c in BACKUP_CODE_ALPHABET for c in normalized)

    @staticmethod
    def hash_backup_code(code: str) -> str:
        """
        Hash backup code for secure storage (argon2id, random salt per code).

        Args:
            code: Backup code (any case, with or without hyphen)

        Returns:
            Hashed backup code
        """
        return _password_hasher.hash(MFAService.normalize_backup_code(code))

    @staticmethod
    def verify_backup_code(code: str, hashed_code: str) -> bool:
        """
        Verify backup code against hash.

        Args:
            code: User-provided backup code
            hashed_code: Stored hashed backup code

        Returns:
            True if code matches
        """
        try:
            return _password_hasher.verify(hashed_code, MFAService.normalize_backup_code(code))
        except (VerificationError, InvalidHashError):
            return False

    @staticmethod
    def generate_session_token() -> str:
        """Opaque setup-session token (256 bits, URL safe)."""
        return base64.urlsafe_b64encode(_random_bytes(32)).rstrip(b"=").decode("ascii")

    @staticmethod
    def hash_session_token(token: str) -> str:
        """Return the SHA-256 hex digest of a raw session token."""
        return hashlib.sha256(token.encode()).hexdigest()


mfa_service = MFAService()
