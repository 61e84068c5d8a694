"""
EmailVault: one object wiring key derivation, storage and the services.

Quick start::

    config = VaultConfig.from_env()
    pool = await asyncpg.create_pool(config.database_url)
    vault = EmailVault.new(PostgresStorage(pool, config.store_timeout), config)

    record_id = await vault.store_encrypted_email(user_id, {"to": ..., "subject": ..., "body": ...})
    result = await vault.exporter.export(user_id, password)
    await vault.importer.import_package(result.export_id, password, target_user_id=new_id)
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from .archive import EmailArchiver
from .config import VaultConfig
from .kdf import KeyDerivation
from .models import DecryptedListing, EmailContext, PlainEmail, utcnow
from .recovery import PasswordVerifier, RecoveryExporter, RecoveryImporter, verify_password
from .retention import RetentionSweeper
from .storage import VaultStorage
from .store import Clock, EncryptedEmailStore, KeyRing


class EmailVault:
    """Composition root for the email vault."""

    def __init__(
        self,
        config: VaultConfig,
        kdf: KeyDerivation,
        store: EncryptedEmailStore,
        key_ring: KeyRing,
        archiver: EmailArchiver,
        exporter: RecoveryExporter,
        importer: RecoveryImporter,
        sweeper: RetentionSweeper,
    ) -> None:
        self.config = config
        self.kdf = kdf
        self.store = store
        self.key_ring = key_ring
        self.archiver = archiver
        self.exporter = exporter
        self.importer = importer
        self.sweeper = sweeper

    @classmethod
    def new(
        cls,
        storage: VaultStorage,
        config: VaultConfig,
        clock: Clock = utcnow,
        password_verifier: PasswordVerifier = verify_password,
    ) -> EmailVault:
        """
        Build every component over ``storage``.

        Raises:
            ConfigurationError: If required secrets are missing
        """
        kdf = KeyDerivation(config)
        store = EncryptedEmailStore(storage, clock=clock, default_retention=config.retention)
        key_ring = KeyRing(storage, kdf, clock=clock)
        return cls(
            config=config,
            kdf=kdf,
            store=store,
            key_ring=key_ring,
            archiver=EmailArchiver(store, key_ring, clock=clock),
            exporter=RecoveryExporter(
                store, key_ring, kdf, config, clock=clock, password_verifier=password_verifier
            ),
            importer=RecoveryImporter(store, key_ring, kdf, clock=clock),
            sweeper=RetentionSweeper(store, clock=clock),
        )

    async def store_encrypted_email(
        self,
        user_id: int,
        email_data: Union[PlainEmail, Mapping[str, Any]],
        context: Union[EmailContext, str] = EmailContext.NOTIFICATION,
    ) -> int:
        """Archive one email; returns the record id."""
        return await self.archiver.store_encrypted_email(user_id, email_data, context)

    async def retrieve_user_emails(
        self,
        user_id: int,
        context: Optional[Union[EmailContext, str]] = None,
        limit: int = 100,
    ) -> DecryptedListing:
        return await self.archiver.retrieve_user_emails(user_id, context, limit)
