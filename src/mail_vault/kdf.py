"""
Key derivation for storage and recovery keys.

Both keys come from PBKDF2-HMAC-SHA512 with at least 100,000 iterations:

- Storage key: ``master_secret || hex(user_salt)`` salted with the platform
  storage salt. Neither the master secret nor a user's salt is enough on
  its own.
- Recovery key: the export password salted with ``user_email ||
  recovery_salt``, so one password yields a different key for every account.
"""

from __future__ import annotations

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import MIN_KDF_ITERATIONS, VaultConfig
from .crypto import AES_256_KEY_SIZE, SecureKey

USER_SALT_SIZE: int = 64


def derive_key(secret: bytes, salt: bytes, iterations: int = MIN_KDF_ITERATIONS) -> SecureKey:
    """
    Derive a 32-byte key with PBKDF2-HMAC-SHA512.

    Args:
        secret: Secret or password bytes
        salt: Salt bytes
        iterations: PBKDF2 iteration count

    Returns:
        Derived key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=AES_256_KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return SecureKey(kdf.derive(secret))


class KeyDerivation:
    """Derives per-user storage keys and per-account recovery keys."""

    def __init__(self, config: VaultConfig) -> None:
        """
        Args:
            config: Vault configuration; validated here

        Raises:
            ConfigurationError: If the master secret or a platform salt is absent
        """
        self._config = config.validate()

    @property
    def iterations(self) -> int:
        return self._config.kdf_iterations

    def storage_key(self, user_salt: bytes) -> SecureKey:
        """Derive the key that encrypts a user's archived emails."""
        secret = self._config.master_secret.encode("utf-8") + user_salt.hex().encode("ascii")
        return derive_key(secret, self._config.storage_salt.encode("utf-8"), self.iterations)

    def recovery_key(self, password: str, user_email: str) -> SecureKey:
        """Derive the key that seals a recovery package for ``user_email``."""
        salt = (user_email + self._config.recovery_salt).encode("utf-8")
        return derive_key(password.encode("utf-8"), salt, self.iterations)
