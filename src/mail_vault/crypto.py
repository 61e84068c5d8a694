"""
Cryptographic primitives for AES-256-GCM email encryption.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- EncryptedPayload: Ciphertext with its nonce and detached authentication tag
- AesGcmCipher: AES-256-GCM encryption/decryption operations

Stored rows and recovery package files keep the tag separate from the
ciphertext and hex-encode all three parts, so the payload type carries them
as separate fields rather than as one AEAD blob.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationError, FormatError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 16  # 128 bits, matches the stored iv column width
TAG_SIZE: int = 16  # 128 bits (authentication tag)
CIPHER_VERSION: str = "1.0"


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise TypeError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecureKey):
            return NotImplemented
        return secrets.compare_digest(bytes(self._bytes), bytes(other._bytes))

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


@dataclass(frozen=True)
class EncryptedPayload:
    """
    Ciphertext, nonce and detached GCM tag.

    This is the unit persisted for every archived email and every recovery
    package.
    """

    ciphertext: bytes
    nonce: bytes  # 16 bytes
    auth_tag: bytes  # 16 bytes

    def to_hex(self) -> Dict[str, str]:
        """Hex-encode as the ``encrypted_data`` / ``iv`` / ``auth_tag`` triple."""
        return {
            "encrypted_data": self.ciphertext.hex(),
            "iv": self.nonce.hex(),
            "auth_tag": self.auth_tag.hex(),
        }

    @classmethod
    def from_hex(cls, encrypted_data: str, iv: str, auth_tag: str) -> EncryptedPayload:
        """
        Decode the hex triple.

        Raises:
            FormatError: If any part is not valid hex
        """
        try:
            return cls(
                ciphertext=bytes.fromhex(encrypted_data),
                nonce=bytes.fromhex(iv),
                auth_tag=bytes.fromhex(auth_tag),
            )
        except (TypeError, ValueError) as e:
            raise FormatError(f"Invalid hex encoding: {e}")


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Provides static methods for encryption and decryption.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
    ) -> EncryptedPayload:
        """
        Encrypt plaintext with AES-256-GCM under a fresh random nonce.

        Args:
            key: 32-byte encryption key
            plaintext: Data to encrypt

        Returns:
            EncryptedPayload with ciphertext, nonce and detached tag

        Raises:
            ValueError: If the key size is invalid
        """
        if len(key) != AES_256_KEY_SIZE:
            raise ValueError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
            )

        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, None)

        # AESGCM appends the tag to the ciphertext
        return EncryptedPayload(
            ciphertext=sealed[:-TAG_SIZE],
            nonce=nonce,
            auth_tag=sealed[-TAG_SIZE:],
        )

    @staticmethod
    def decrypt(
        key: SecureKey,
        payload: EncryptedPayload,
    ) -> bytes:
        """
        Verify the tag and decrypt.

        Args:
            key: 32-byte decryption key
            payload: EncryptedPayload to open

        Returns:
            Decrypted plaintext bytes

        Raises:
            AuthenticationError: If verification fails for any reason
        """
        if len(key) != AES_256_KEY_SIZE:
            raise ValueError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
            )

        # Malformed nonce/tag must look the same as a wrong key
        if len(payload.nonce) != NONCE_SIZE or len(payload.auth_tag) != TAG_SIZE:
            raise AuthenticationError()

        aesgcm = AESGCM(key.as_bytes())
        try:
            return aesgcm.decrypt(payload.nonce, payload.ciphertext + payload.auth_tag, None)
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise AuthenticationError() from None


def generate_random_bytes(length: int) -> bytes:
    """Generate cryptographically secure random bytes."""
    return secrets.token_bytes(length)
