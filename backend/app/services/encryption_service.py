"""Encryption at rest for MFA secrets.

Key rotation:
  - Ciphertexts are stored with a version prefix: ``v{n}:<base64ciphertext>``
  - New writes always use ENCRYPTION_CURRENT_VERSION and MASTER_ENCRYPTION_KEY
  - Rows written under a previous key are decrypted via ENCRYPTION_KEY_V1

Rotation procedure:
  1. Generate a new Fernet key:
       python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
  2. Move current MASTER_ENCRYPTION_KEY -> ENCRYPTION_KEY_V1
  3. Set MASTER_ENCRYPTION_KEY = <new key>
  4. Increment ENCRYPTION_CURRENT_VERSION (e.g. 1 -> 2)
"""

import base64

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from app.config import settings


class EncryptionService:
    """Versioned Fernet encryption for TOTP secrets."""

    def __init__(self):
        if not settings.MASTER_ENCRYPTION_KEY:
            raise ValueError("MASTER_ENCRYPTION_KEY must be set in environment")

        self._current_version = settings.ENCRYPTION_CURRENT_VERSION
        self._keys: dict[int, Fernet] = {
            self._current_version: self._load_key(settings.MASTER_ENCRYPTION_KEY, "MASTER_ENCRYPTION_KEY")
        }

        # Previous key stays decrypt-only after a rotation
        if settings.ENCRYPTION_KEY_V1 and self._current_version != 1:
            self._keys[1] = self._load_key(settings.ENCRYPTION_KEY_V1, "ENCRYPTION_KEY_V1")

    @staticmethod
    def _load_key(key: str, name: str) -> Fernet:
        try:
            return Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid {name} format. Must be a valid Fernet key: {e}")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt and return ``v{version}:<base64(fernet_ciphertext)>``.

        Raises:
            ValueError: If plaintext is empty
        """
        if not plaintext:
            raise ValueError("Plaintext cannot be empty")

        fernet = self._keys[self._current_version]
        ciphertext = base64.b64encode(fernet.encrypt(plaintext.encode())).decode("utf-8")
        return f"v{self._current_version}:{ciphertext}"

    def decrypt(self, stored: str) -> str:
        """
        Decrypt a versioned ciphertext produced by :meth:`encrypt`.

        Raises:
            ValueError: If the value is malformed, the key version is unknown,
                or the ciphertext does not authenticate
        """
        if not stored or not isinstance(stored, str):
            raise ValueError("Encrypted value must be a non-empty string")

        prefix, sep, ciphertext = stored.partition(":")
        if not sep or not prefix.startswith("v") or not prefix[1:].isdigit():
            raise ValueError("Encrypted value is missing its version prefix")
        version = int(prefix[1:])

        if version not in self._keys:
            raise ValueError(
                f"No decryption key configured for version {version}. "
                f"Check ENCRYPTION_KEY_V{version} in your environment."
            )

        try:
            return self._keys[version].decrypt(base64.b64decode(ciphertext.encode("utf-8"))).decode()
        except (InvalidToken, ValueError) as e:
            raise ValueError(f"Failed to decrypt value (version {version}): {e}")


# Singleton instance
_encryption_service = None


def get_encryption_service() -> EncryptionService:
    """Get or create the encryption service singleton."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy column type that encrypts on write and decrypts on read.

    Unlike a migration-friendly variant, a value that fails to decrypt is an
    error: a TOTP secret that cannot be read must not silently become
    ciphertext handed to pyotp.

    Usage in models::

        secret = Column(EncryptedString(512), nullable=True)
    """

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return get_encryption_service().encrypt(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return get_encryption_service().decrypt(value)
