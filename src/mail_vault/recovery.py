"""
Password-based recovery export and import.

This module provides:
- RecoveryPackageFile: The downloadable JSON artifact (wire format)
- RecoveryExporter: Seals a user's archived emails into a RecoveryPackage
- RecoveryImporter: Opens a package and re-archives its emails for a target user
- verify_password: argon2 check of the account credential hash

Crypto flow:
1. Export: verify the account password, decrypt up to 1000 active emails with
   the owner's storage key, serialize them into a bundle, derive the recovery
   key from (password, owner email, recovery salt) and seal the bundle.
2. Import: derive the recovery key from the *original owner's* email, open the
   bundle (a bad tag means a wrong password), then encrypt every email under
   the target user's storage key with context ``recovered``.

The ``downloaded`` flag is the import claim: it is flipped with a conditional
update after the bundle authenticates and before anything is written, so two
imports of one package never both apply it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from .cipher import EmailCipher
from .config import VaultConfig
from .crypto import NONCE_SIZE, TAG_SIZE, EncryptedPayload
from .errors import (
    AuthenticationError,
    ExpiredError,
    FormatError,
    NotFoundError,
    StorageError,
    ValidationError,
    VaultError,
)
from .kdf import KeyDerivation
from .models import (
    DecryptedListing,
    EmailContext,
    ExportResult,
    ImportResult,
    PlainEmail,
    RecoveryPackage,
    UserAccount,
    utcnow,
)
from .store import Clock, EncryptedEmailStore, KeyRing, retry_on_timeout

logger = logging.getLogger(__name__)

RECOVERED_SUBJECT_PREFIX = "[RECOVERED] "

INSTRUCTIONS = {
    "en": "Use WPMA recovery tool or API to import these emails",
    "de": "Verwenden Sie das WPMA Recovery-Tool oder API um diese Emails zu importieren",
}

PasswordVerifier = Callable[[str, str], bool]

_hasher = PasswordHasher()


def verify_password(password_hash: str, password: str) -> bool:
    """Check ``password`` against an argon2 hash. Never raises on mismatch."""
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


# =============================================================================
# Wire format
# =============================================================================


@dataclass(frozen=True)
class RecoveryPackageFile:
    """
    Downloadable recovery artifact.

    JSON object with ``export_id``, hex ``encrypted_data``, hex ``iv`` (16
    bytes), hex ``auth_tag`` (16 bytes) and human-readable ``instructions``.
    """

    export_id: str
    payload: EncryptedPayload

    @classmethod
    def from_package(cls, package: RecoveryPackage) -> RecoveryPackageFile:
        return cls(export_id=package.export_id, payload=package.payload)

    def to_json(self) -> str:
        document = {"export_id": self.export_id}
        document.update(self.payload.to_hex())
        document["instructions"] = dict(INSTRUCTIONS)
        return json.dumps(document, indent=2)

    def filename(self) -> str:
        return f"wpma-email-recovery-{self.export_id}.json"

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> RecoveryPackageFile:
        """
        Parse a recovery file produced by any prior exporter.

        Raises:
            FormatError: If the file is not a well-formed recovery package
        """
        try:
            document = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise FormatError("Recovery file is not valid JSON") from None
        if not isinstance(document, dict):
            raise FormatError("Recovery file is not a JSON object")

        fields = ("export_id", "encrypted_data", "iv", "auth_tag")
        for name in fields:
            if not isinstance(document.get(name), str) or not document[name]:
                raise FormatError(f"Recovery file field '{name}' is missing")

        payload = EncryptedPayload.from_hex(
            document["encrypted_data"], document["iv"], document["auth_tag"]
        )
        if len(payload.nonce) != NONCE_SIZE or len(payload.auth_tag) != TAG_SIZE:
            raise FormatError("Recovery file iv/auth_tag have the wrong length")
        return cls(export_id=document["export_id"], payload=payload)


# =============================================================================
# Exporter
# =============================================================================


class RecoveryExporter:
    """Bundles a user's emails into a password-protected RecoveryPackage."""

    def __init__(
        self,
        store: EncryptedEmailStore,
        key_ring: KeyRing,
        kdf: KeyDerivation,
        config: VaultConfig,
        clock: Clock = utcnow,
        password_verifier: PasswordVerifier = verify_password,
    ) -> None:
        self._store = store
        self._storage = store.storage
        self._key_ring = key_ring
        self._kdf = kdf
        self._config = config
        self._clock = clock
        self._verify = password_verifier

    async def export(self, user_id: int, password: str) -> ExportResult:
        """
        Create a recovery package for ``user_id``.

        Args:
            user_id: Account whose emails are exported
            password: Account password; also the package password

        Returns:
            ExportResult with export id, expiry and email count

        Raises:
            ValidationError: If user id or password is missing
            AuthenticationError: If the password does not match the account
        """
        if user_id is None or not password:
            raise ValidationError("Password required for email export")

        user = await retry_on_timeout(lambda: self._storage.get_user(user_id), "get user")
        # Unknown user and wrong password look the same
        if user is None or not await asyncio.to_thread(self._verify, user.password_hash, password):
            logger.warning("Recovery export rejected for user %s", user_id)
            raise AuthenticationError()

        records = await self._store.list_by_owner(user_id, limit=self._config.max_export_emails)
        listing = DecryptedListing()
        if records:
            storage_key = await self._key_ring.storage_key(user_id)
            listing = EncryptedEmailStore.decrypt_listing(records, storage_key)
        emails = listing.emails
        skipped = listing.skipped

        now = self._clock()
        bundle = {
            "user_id": user_id,
            "user_email": user.email,
            "export_date": now.isoformat(),
            "total_emails": len(emails),
            "emails": [
                {
                    "id": item.id,
                    "context": item.context.value,
                    "created_at": item.created_at.isoformat(),
                    **item.email.to_dict(),
                }
                for item in emails
            ],
        }

        recovery_key = await asyncio.to_thread(self._kdf.recovery_key, password, user.email)
        payload = EmailCipher.seal_document(bundle, recovery_key)

        package = RecoveryPackage(
            export_id=str(uuid4()),
            owner_user_id=user_id,
            ciphertext=payload.ciphertext,
            nonce=payload.nonce,
            auth_tag=payload.auth_tag,
            created_at=now,
            expires_at=now + self._config.export_ttl,
            downloaded=False,
        )
        await retry_on_timeout(
            lambda: self._storage.insert_package(package), "store recovery export"
        )

        await _log_recovery(
            self._storage,
            user_id,
            "export",
            now,
            {"export_id": package.export_id, "email_count": len(emails), "skipped": skipped},
        )
        logger.info(
            "Created recovery export %s for user %s (%d emails, %d skipped)",
            package.export_id,
            user_id,
            len(emails),
            skipped,
        )
        return ExportResult(
            export_id=package.export_id,
            expires_at=package.expires_at,
            email_count=len(emails),
            skipped=skipped,
        )

    async def download(self, export_id: str, user_id: int) -> RecoveryPackageFile:
        """
        Build the downloadable file for a package owned by ``user_id``.

        Raises:
            NotFoundError: If the package does not exist or is not the user's
            ExpiredError: If the package is past its expiry
        """
        if not export_id:
            raise ValidationError("Export ID required")
        package = await retry_on_timeout(
            lambda: self._storage.get_package(export_id), "get recovery export"
        )
        if package is None or package.owner_user_id != user_id:
            raise NotFoundError()
        if package.is_expired(self._clock()):
            raise ExpiredError()
        return RecoveryPackageFile.from_package(package)

    async def list_active(self, user_id: int) -> List[RecoveryPackage]:
        """The user's unexpired packages, newest first."""
        now = self._clock()
        return await retry_on_timeout(
            lambda: self._storage.list_packages(user_id, now), "list recovery exports"
        )


# =============================================================================
# Importer
# =============================================================================


class RecoveryImporter:
    """Restores emails from a RecoveryPackage into a target account."""

    def __init__(
        self,
        store: EncryptedEmailStore,
        key_ring: KeyRing,
        kdf: KeyDerivation,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._storage = store.storage
        self._key_ring = key_ring
        self._kdf = kdf
        self._clock = clock

    async def import_package(
        self, export_id: str, password: str, target_user_id: Optional[int] = None
    ) -> ImportResult:
        """
        Import a stored package by export id.

        Args:
            export_id: Package identifier
            password: Password the package was exported with
            target_user_id: Account to restore into (default: original owner)

        Raises:
            ValidationError: If export id or password is missing
            NotFoundError: If the package does not exist
            ExpiredError: If the package is past its expiry
            AuthenticationError: If the password is wrong or the package was tampered with
            FormatError: If the authenticated bundle is malformed
        """
        if not export_id or not password:
            raise ValidationError("Export ID and password required")
        package = await self._load_package(export_id)
        return await self._import(package, package.payload, password, target_user_id)

    async def import_file(
        self,
        raw: Union[str, bytes],
        password: str,
        target_user_id: Optional[int] = None,
    ) -> ImportResult:
        """
        Import from a downloaded recovery file.

        The file's own ciphertext is opened; the stored package supplies the
        owner and expiry.
        """
        if not password:
            raise ValidationError("Password required for email import")
        package_file = RecoveryPackageFile.from_json(raw)
        package = await self._load_package(package_file.export_id)
        return await self._import(package, package_file.payload, password, target_user_id)

    async def _load_package(self, export_id: str) -> RecoveryPackage:
        package = await retry_on_timeout(
            lambda: self._storage.get_package(export_id), "get recovery export"
        )
        if package is None:
            raise NotFoundError()
        if package.is_expired(self._clock()):
            raise ExpiredError()
        return package

    async def _import(
        self,
        package: RecoveryPackage,
        payload: EncryptedPayload,
        password: str,
        target_user_id: Optional[int],
    ) -> ImportResult:
        owner = await self._get_user(package.owner_user_id)
        if owner is None:
            # Without the owner's email the key cannot be derived
            raise AuthenticationError()

        recovery_key = await asyncio.to_thread(self._kdf.recovery_key, password, owner.email)
        try:
            bundle = EmailCipher.open_document(payload, recovery_key)
        except AuthenticationError:
            logger.warning("Recovery import rejected for export %s", package.export_id)
            raise
        entries = _bundle_entries(bundle)

        target = target_user_id if target_user_id is not None else package.owner_user_id
        if target != package.owner_user_id and await self._get_user(target) is None:
            raise NotFoundError("Target user not found")

        claimed = await retry_on_timeout(
            lambda: self._storage.mark_package_downloaded(package.export_id),
            "claim recovery export",
        )
        if not claimed:
            logger.info("Recovery export %s was already imported", package.export_id)
            return ImportResult(
                imported_count=0,
                total_count=len(entries),
                target_user_id=target,
                already_imported=True,
            )

        progress = _RestoreProgress()
        try:
            await self._restore(entries, target, progress)
        except BaseException:
            # Once an email has landed a retry would apply it twice; keep the claim
            if progress.imported == 0:
                await self._release(package.export_id)
            raise
        imported, failed = progress.imported, progress.failed

        if failed and not imported:
            # Nothing landed; let a retry claim the package again
            await self._release(package.export_id)

        await _log_recovery(
            self._storage,
            target,
            "import",
            self._clock(),
            {
                "export_id": package.export_id,
                "source_user_id": package.owner_user_id,
                "imported": imported,
                "failed": failed,
            },
        )
        logger.info(
            "Imported %d/%d emails from export %s into user %s",
            imported,
            len(entries),
            package.export_id,
            target,
        )
        return ImportResult(
            imported_count=imported,
            total_count=len(entries),
            target_user_id=target,
            failed_count=failed,
        )

    async def _restore(self, entries: List[Any], target: int, progress: _RestoreProgress) -> None:
        if not entries:
            return
        target_key = await self._key_ring.storage_key(target)
        for position, entry in enumerate(entries):
            try:
                email = _recovered_email(entry)
                payload = EmailCipher.encrypt(email, target_key)
                await self._store.insert(target, EmailContext.RECOVERED, payload)
            except VaultError as e:
                progress.failed += 1
                logger.warning(
                    "Failed to import bundled email #%d (%s)", position, type(e).__name__
                )
                continue
            progress.imported += 1

    async def _release(self, export_id: str) -> None:
        try:
            await self._storage.reset_package_downloaded(export_id)
        except StorageError as e:
            logger.error("Could not release claim on export %s: %s", export_id, e)

    async def _get_user(self, user_id: int) -> Optional[UserAccount]:
        return await retry_on_timeout(lambda: self._storage.get_user(user_id), "get user")


# =============================================================================
# Helpers
# =============================================================================


@dataclass
class _RestoreProgress:
    """Counts of one restore, readable even if the restore is interrupted."""

    imported: int = 0
    failed: int = 0


def _bundle_entries(bundle: Dict[str, Any]) -> List[Any]:
    entries = bundle.get("emails")
    if not isinstance(entries, list):
        raise FormatError("Recovery bundle has no email list")
    return entries


def _recovered_email(entry: Any) -> PlainEmail:
    """Rebuild a bundled email for re-archival under the recovered context."""
    email = PlainEmail.from_dict(entry)
    message_id = email.message_id
    if message_id is None and isinstance(entry, dict) and entry.get("id") is not None:
        message_id = str(entry["id"])
    return PlainEmail(
        to=email.to,
        from_address=email.from_address,
        subject=RECOVERED_SUBJECT_PREFIX + email.subject,
        body=email.body,
        attachments=email.attachments,
        headers=email.headers,
        timestamp=email.timestamp,
        message_id=message_id,
    )


async def _log_recovery(storage, user_id, scenario, when, metadata) -> None:
    # Operation log rows are housekeeping; failing to write one is not fatal
    try:
        await storage.append_recovery_log(user_id, scenario, when, metadata)
    except StorageError as e:
        logger.error("Failed to write recovery log (%s): %s", scenario, e)
