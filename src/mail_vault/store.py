"""
Encrypted email store and per-user key ring.

This module provides:
- EncryptedEmailStore: insert/list/purge of ciphertext rows over a VaultStorage
- KeyRing: lazily creates per-user salts and derives storage keys
- retry_on_timeout: run a store call, retrying once after StoreTimeoutError

The store never decrypts on its own; callers decrypt one record at a time via
:meth:`EncryptedEmailStore.decrypt_listing`, which skips and counts
undecryptable rows.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar, Union

from .cipher import EmailCipher
from .config import DEFAULT_RETENTION
from .crypto import EncryptedPayload, SecureKey, generate_random_bytes
from .errors import StoreTimeoutError, ValidationError, VaultError
from .kdf import USER_SALT_SIZE, KeyDerivation
from .models import (
    DecryptedEmail,
    DecryptedListing,
    EmailContext,
    EncryptedEmailRecord,
    UserKeyMaterial,
    utcnow,
)
from .storage import VaultStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]


async def retry_on_timeout(operation: Callable[[], Awaitable[T]], what: str) -> T:
    """
    Await ``operation()``; on StoreTimeoutError try exactly once more.

    Raises:
        StoreTimeoutError: If the retry also times out
    """
    try:
        return await operation()
    except StoreTimeoutError:
        logger.warning("Store call timed out, retrying once: %s", what)
        return await operation()


class KeyRing:
    """Resolves a user's storage key, creating their salt on first use."""

    def __init__(self, storage: VaultStorage, kdf: KeyDerivation, clock: Clock = utcnow) -> None:
        self._storage = storage
        self._kdf = kdf
        self._clock = clock

    async def get_or_create_salt(self, user_id: int) -> bytes:
        """
        Return the user's salt, creating it atomically if absent.

        Two concurrent first calls both end up with the winner's salt.
        """
        salt = await retry_on_timeout(lambda: self._storage.get_salt(user_id), "get salt")
        if salt is not None:
            return salt

        candidate = UserKeyMaterial(
            user_id=user_id,
            salt=generate_random_bytes(USER_SALT_SIZE),
            created_at=self._clock(),
        )
        stored = await retry_on_timeout(
            lambda: self._storage.insert_salt_if_absent(candidate), "store salt"
        )
        if stored != candidate.salt:
            logger.debug("Salt for user %s created concurrently; using existing one", user_id)
        return stored

    async def storage_key(self, user_id: int) -> SecureKey:
        """Derive the storage key for ``user_id``."""
        salt = await self.get_or_create_salt(user_id)
        # PBKDF2 is CPU-bound; keep it off the event loop
        return await asyncio.to_thread(self._kdf.storage_key, salt)


class EncryptedEmailStore:
    """Persistence of encrypted email rows."""

    def __init__(
        self,
        storage: VaultStorage,
        clock: Clock = utcnow,
        default_retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._default_retention = default_retention

    @property
    def storage(self) -> VaultStorage:
        return self._storage

    async def insert(
        self,
        owner_user_id: int,
        context: Union[EmailContext, str],
        payload: EncryptedPayload,
        retention: Optional[timedelta] = None,
    ) -> int:
        """
        Store one encrypted email.

        Args:
            owner_user_id: Owner of the record
            context: Archival context
            payload: Output of EmailCipher.encrypt
            retention: Lifetime from now (default one year)

        Returns:
            The new record id
        """
        ctx = EmailContext.parse(context)
        retention = retention if retention is not None else self._default_retention
        if retention <= timedelta(0):
            raise ValidationError("Retention period must be positive")

        created_at = self._clock()
        expires_at = created_at + retention
        return await retry_on_timeout(
            lambda: self._storage.insert_record(
                owner_user_id, ctx, payload, created_at, expires_at
            ),
            "insert encrypted email",
        )

    async def list_by_owner(
        self,
        owner_user_id: int,
        context: Optional[Union[EmailContext, str]] = None,
        limit: int = 100,
    ) -> List[EncryptedEmailRecord]:
        """List the owner's unexpired records, newest first."""
        if limit <= 0:
            raise ValidationError("Limit must be positive")
        ctx = EmailContext.parse(context) if context is not None else None
        now = self._clock()
        return await retry_on_timeout(
            lambda: self._storage.list_records(owner_user_id, now, ctx, limit),
            "list encrypted emails",
        )

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every record past its expiry. Returns rows removed."""
        now = now if now is not None else self._clock()
        return await retry_on_timeout(
            lambda: self._storage.delete_expired_records(now), "purge encrypted emails"
        )

    @staticmethod
    def decrypt_listing(
        records: Iterable[EncryptedEmailRecord], key: SecureKey
    ) -> DecryptedListing:
        """
        Decrypt records one by one.

        A record that fails authentication or structure checks is skipped and
        its id added to ``skipped_ids``; nothing is raised.
        """
        listing = DecryptedListing()
        for record in records:
            try:
                email = EmailCipher.decrypt(record.payload, key)
            except VaultError as e:
                logger.warning(
                    "Skipping undecryptable email %s (%s)", record.id, type(e).__name__
                )
                listing.skipped_ids.append(record.id)
                continue
            listing.emails.append(
                DecryptedEmail(
                    id=record.id,
                    context=record.context,
                    created_at=record.created_at,
                    email=email,
                )
            )
        return listing
