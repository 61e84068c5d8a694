"""
Exception classes for email vault operations.

Every error carries a stable ``code`` and a ``public_message`` that is safe to
hand back to an end user. The ``str()`` of an exception may hold internal
detail for logs; the public message never does.
"""

from __future__ import annotations

from typing import Optional


class VaultError(Exception):
    """Base exception for all email vault operations."""

    code: str = "vault_error"
    public_message: str = "Email vault operation failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)


class ConfigurationError(VaultError):
    """Required secret or setting is missing or invalid. Fatal at startup."""

    code = "configuration_error"
    public_message = "Email encryption is not configured"


class AuthenticationError(VaultError):
    """Wrong password or authentication tag verification failure.

    Never distinguishes a wrong password from corrupt data.
    """

    code = "authentication_failed"
    public_message = "Invalid credentials or recovery package"

    def __init__(self, message: Optional[str] = None) -> None:
        # Detail is dropped so callers cannot leak it.
        super().__init__(self.public_message)


class NotFoundError(VaultError):
    """Unknown export id or user."""

    code = "not_found"
    public_message = "Recovery export not found"


class ExpiredError(VaultError):
    """Package or record is past its lifetime."""

    code = "expired"
    public_message = "Recovery export has expired"


class FormatError(VaultError):
    """Decrypted payload or package file fails structural validation."""

    code = "invalid_format"
    public_message = "Malformed email payload"


class ValidationError(VaultError):
    """Missing or invalid caller input."""

    code = "validation_error"
    public_message = "Invalid request"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message)
        # Validation detail is about the caller's own input and safe to echo.
        if message:
            self.public_message = message


class StorageError(VaultError):
    """Storage backend error (database, in-memory, etc.)."""

    code = "storage_error"
    public_message = "Email storage failed"


class StoreTimeoutError(StorageError):
    """Store call exceeded its timeout. Transient and retryable."""

    code = "storage_timeout"
    public_message = "Email storage is temporarily unavailable"
