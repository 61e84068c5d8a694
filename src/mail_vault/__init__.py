"""
Mail Vault

Encrypted email archival with password-based recovery, backed by PostgreSQL.

Overview
--------
- **Storage keys** are derived per user (PBKDF2-HMAC-SHA512) from a platform
  master secret and a random per-user salt; every archived email is sealed
  with AES-256-GCM under that key
- **Recovery packages** bundle a user's emails under a key derived from their
  account password, so they can be restored into the same or another account
- **Retention sweeps** purge expired emails, expired packages and old
  operation logs on a daily and weekly schedule

Quick Start
-----------
```python
import asyncio
import asyncpg
from mail_vault import EmailVault, PostgresStorage, VaultConfig

async def main():
    config = VaultConfig.from_env()
    pool = await asyncpg.create_pool(config.database_url)
    vault = EmailVault.new(PostgresStorage(pool, config.store_timeout), config)

    await vault.store_encrypted_email(
        42, {"to": "ops@example.com", "subject": "Backup done", "body": "..."}
    )
    listing = await vault.retrieve_user_emails(42)

    export = await vault.exporter.export(42, "account-password")
    result = await vault.importer.import_package(
        export.export_id, "account-password", target_user_id=43
    )

asyncio.run(main())
```

Modules
-------
- `crypto`: AES-256-GCM primitives and SecureKey
- `kdf`: storage and recovery key derivation
- `cipher`: email and document sealing
- `store`: encrypted email store and per-user key ring
- `archive`: archival entry point for notification/alert/report senders
- `recovery`: recovery export, download and import
- `retention`: daily/weekly retention sweeps and scheduling
- `storage` / `postgres_storage`: in-memory and PostgreSQL backends
- `vault`: composition root
- `cli`: `mail-vault` maintenance command
"""

__version__ = "0.1.0"

# ============================================================================
# Crypto Exports
# ============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    CIPHER_VERSION,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedPayload,
    SecureKey,
    generate_random_bytes,
)
from .kdf import KeyDerivation, derive_key
from .cipher import EmailCipher

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    AuthenticationError,
    ConfigurationError,
    ExpiredError,
    FormatError,
    NotFoundError,
    StorageError,
    StoreTimeoutError,
    ValidationError,
    VaultError,
)

# ============================================================================
# Config and Model Exports
# ============================================================================

from .config import VaultConfig
from .models import (
    CleanupStats,
    DecryptedEmail,
    DecryptedListing,
    EmailContext,
    EncryptedEmailRecord,
    ExportResult,
    ImportResult,
    PlainEmail,
    RecoveryPackage,
    UserAccount,
    UserKeyMaterial,
)

# ============================================================================
# Storage Exports
# ============================================================================

from .storage import InMemoryStorage, LogRow, VaultStorage
from .postgres_storage import SCHEMA_SQL, PostgresStorage

# ============================================================================
# Service Exports (Primary API)
# ============================================================================

from .store import EncryptedEmailStore, KeyRing
from .archive import EmailArchiver
from .recovery import (
    RecoveryExporter,
    RecoveryImporter,
    RecoveryPackageFile,
    verify_password,
)
from .retention import (
    Cadence,
    CronTicker,
    RetentionScheduler,
    RetentionSweeper,
    SweepReport,
)
from .vault import EmailVault

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "CIPHER_VERSION",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "EncryptedPayload",
    "SecureKey",
    "generate_random_bytes",
    "KeyDerivation",
    "derive_key",
    "EmailCipher",
    # Errors
    "VaultError",
    "ConfigurationError",
    "AuthenticationError",
    "NotFoundError",
    "ExpiredError",
    "FormatError",
    "ValidationError",
    "StorageError",
    "StoreTimeoutError",
    # Config and models
    "VaultConfig",
    "EmailContext",
    "PlainEmail",
    "EncryptedEmailRecord",
    "UserKeyMaterial",
    "UserAccount",
    "RecoveryPackage",
    "DecryptedEmail",
    "DecryptedListing",
    "ExportResult",
    "ImportResult",
    "CleanupStats",
    # Storage
    "VaultStorage",
    "InMemoryStorage",
    "LogRow",
    "PostgresStorage",
    "SCHEMA_SQL",
    # Services
    "EncryptedEmailStore",
    "KeyRing",
    "EmailArchiver",
    "RecoveryExporter",
    "RecoveryImporter",
    "RecoveryPackageFile",
    "verify_password",
    "RetentionSweeper",
    "SweepReport",
    "Cadence",
    "CronTicker",
    "RetentionScheduler",
    "EmailVault",
]
