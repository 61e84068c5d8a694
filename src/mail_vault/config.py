"""
Configuration for the email vault.

Secrets come from the process environment (optionally populated from a
``.env`` file). Build a :class:`VaultConfig` once at startup and pass it to
the services; nothing in this package reads the environment on its own.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigurationError

MIN_KDF_ITERATIONS: int = 100_000
DEFAULT_RETENTION = timedelta(days=365)
DEFAULT_EXPORT_TTL = timedelta(days=7)
DEFAULT_STORE_TIMEOUT: float = 10.0
MAX_EXPORT_EMAILS: int = 1000


@dataclass(frozen=True)
class VaultConfig:
    """
    Process-wide email vault settings.

    ``master_secret``, ``storage_salt`` and ``recovery_salt`` are required;
    call :meth:`validate` (done by the key derivation service) before use.
    """

    master_secret: Optional[str]
    storage_salt: Optional[str]
    recovery_salt: Optional[str]
    kdf_iterations: int = MIN_KDF_ITERATIONS
    retention: timedelta = DEFAULT_RETENTION
    export_ttl: timedelta = DEFAULT_EXPORT_TTL
    store_timeout: float = DEFAULT_STORE_TIMEOUT
    max_export_emails: int = MAX_EXPORT_EMAILS
    database_url: Optional[str] = None
    log_level: str = "INFO"

    def __repr__(self) -> str:
        return (
            f"VaultConfig(master_secret=[REDACTED], kdf_iterations={self.kdf_iterations}, "
            f"retention={self.retention}, export_ttl={self.export_ttl}, "
            f"store_timeout={self.store_timeout})"
        )

    def validate(self) -> VaultConfig:
        """
        Check that every required secret is present and limits are sane.

        Returns:
            self, for chaining

        Raises:
            ConfigurationError: If a secret is missing or a limit is invalid
        """
        if not self.master_secret:
            raise ConfigurationError("EMAIL_MASTER_SECRET not configured")
        if not self.storage_salt:
            raise ConfigurationError("EMAIL_ENCRYPTION_SALT not configured")
        if not self.recovery_salt:
            raise ConfigurationError("RECOVERY_SALT not configured")
        if self.kdf_iterations < MIN_KDF_ITERATIONS:
            raise ConfigurationError(
                f"KDF iterations must be at least {MIN_KDF_ITERATIONS}, got {self.kdf_iterations}"
            )
        if self.retention <= timedelta(0) or self.export_ttl <= timedelta(0):
            raise ConfigurationError("Retention periods must be positive")
        if self.store_timeout <= 0:
            raise ConfigurationError("Store timeout must be positive")
        return self

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Union[str, Path]] = None,
    ) -> VaultConfig:
        """
        Build configuration from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (no .env loading)
            dotenv_path: Explicit .env file; defaults to searching upwards

        Returns:
            Validated VaultConfig

        Raises:
            ConfigurationError: If required secrets are missing or malformed
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        try:
            iterations = int(env.get("MAIL_VAULT_KDF_ITERATIONS", MIN_KDF_ITERATIONS))
            retention_days = int(env.get("MAIL_VAULT_RETENTION_DAYS", DEFAULT_RETENTION.days))
            ttl_days = int(env.get("MAIL_VAULT_EXPORT_TTL_DAYS", DEFAULT_EXPORT_TTL.days))
            timeout = float(env.get("MAIL_VAULT_STORE_TIMEOUT", DEFAULT_STORE_TIMEOUT))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}")

        config = cls(
            master_secret=env.get("EMAIL_MASTER_SECRET"),
            storage_salt=env.get("EMAIL_ENCRYPTION_SALT"),
            recovery_salt=env.get("RECOVERY_SALT"),
            kdf_iterations=iterations,
            retention=timedelta(days=retention_days),
            export_ttl=timedelta(days=ttl_days),
            store_timeout=timeout,
            database_url=env.get("DATABASE_URL"),
            log_level=env.get("MAIL_VAULT_LOG_LEVEL", "INFO").upper(),
        )
        return config.validate()
