"""
Archival entry point for notification, alert and report senders.

Callers hand over a plain email dict and get back a record id. They never see
ciphertext, keys or salts.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional, Union

from .cipher import EmailCipher
from .errors import StorageError, ValidationError
from .models import DecryptedListing, EmailContext, PlainEmail, utcnow
from .store import Clock, EncryptedEmailStore, KeyRing

logger = logging.getLogger(__name__)

NOTIFICATION_SENDER = "notifications@wpma.io"
ALERT_SENDER = "alerts@wpma.io"
REPORT_SENDER = "reports@wpma.io"


class EmailArchiver:
    """Encrypts and stores emails sent on a user's behalf."""

    def __init__(
        self,
        store: EncryptedEmailStore,
        key_ring: KeyRing,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._key_ring = key_ring
        self._clock = clock

    async def store_encrypted_email(
        self,
        user_id: int,
        email_data: Union[PlainEmail, Mapping[str, Any]],
        context: Union[EmailContext, str] = EmailContext.NOTIFICATION,
        retention: Optional[timedelta] = None,
    ) -> int:
        """
        Encrypt an email under the user's storage key and store it.

        Args:
            user_id: Owner of the archived email
            email_data: PlainEmail or a dict with to/from/subject/body/...
            context: Archival context
            retention: Lifetime override (default one year)

        Returns:
            Record id

        Raises:
            ValidationError: If required input is missing
            StorageError: If the store rejects the write
        """
        if user_id is None:
            raise ValidationError("User id is required")
        ctx = EmailContext.parse(context)
        email = email_data if isinstance(email_data, PlainEmail) else PlainEmail.from_input(email_data)

        key = await self._key_ring.storage_key(user_id)
        payload = EmailCipher.encrypt(email, key)
        record_id = await self._store.insert(user_id, ctx, payload, retention)

        await self._audit(user_id, "encrypt", {"email_id": record_id, "context": ctx.value})
        logger.info("Archived email %s for user %s (%s)", record_id, user_id, ctx.value)
        return record_id

    async def retrieve_user_emails(
        self,
        user_id: int,
        context: Optional[Union[EmailContext, str]] = None,
        limit: int = 100,
    ) -> DecryptedListing:
        """Decrypt a user's unexpired emails, newest first, skipping bad rows."""
        records = await self._store.list_by_owner(user_id, context, limit)
        if not records:
            return DecryptedListing()
        key = await self._key_ring.storage_key(user_id)
        listing = EncryptedEmailStore.decrypt_listing(records, key)
        if listing.skipped:
            logger.warning(
                "Skipped %d undecryptable emails for user %s", listing.skipped, user_id
            )
        return listing

    async def email_stats(self, user_id: int) -> Dict[str, int]:
        """Active email counts per context plus a ``total``."""
        counts = await self._store.storage.count_records_by_context(user_id, self._clock())
        stats = {ctx.value: count for ctx, count in counts.items()}
        stats["total"] = sum(counts.values())
        return stats

    async def archive_notification(self, user_id: int, notification: Mapping[str, Any]) -> int:
        email = {
            "to": _required(notification, "recipient"),
            "from": NOTIFICATION_SENDER,
            "subject": _required(notification, "subject"),
            "body": notification.get("message", ""),
            "message_id": self._message_id("notification", user_id),
            "headers": {
                "X-WPMA-Type": "notification",
                "X-WPMA-User-ID": str(user_id),
            },
        }
        return await self.store_encrypted_email(user_id, email, EmailContext.NOTIFICATION)

    async def archive_alert(self, user_id: int, alert: Mapping[str, Any]) -> int:
        email = {
            "to": _required(alert, "recipient"),
            "from": ALERT_SENDER,
            "subject": f"[ALERT] {_required(alert, 'subject')}",
            "body": alert.get("message", ""),
            "message_id": self._message_id("alert", user_id),
            "headers": {
                "X-WPMA-Type": "alert",
                "X-WPMA-Severity": alert.get("severity") or "medium",
                "X-WPMA-User-ID": str(user_id),
            },
        }
        return await self.store_encrypted_email(user_id, email, EmailContext.ALERT)

    async def archive_report(self, user_id: int, report: Mapping[str, Any]) -> int:
        email = {
            "to": _required(report, "recipient"),
            "from": REPORT_SENDER,
            "subject": f"[REPORT] {_required(report, 'subject')}",
            "body": report.get("content", ""),
            "message_id": self._message_id("report", user_id),
            "headers": {
                "X-WPMA-Type": "report",
                "X-WPMA-Report-Type": report.get("type") or "general",
                "X-WPMA-User-ID": str(user_id),
            },
        }
        return await self.store_encrypted_email(user_id, email, EmailContext.REPORT)

    def _message_id(self, kind: str, user_id: int) -> str:
        return f"{kind}_{int(self._clock().timestamp() * 1000)}_{user_id}"

    async def _audit(self, user_id: int, action: str, metadata: Dict[str, Any]) -> None:
        # The email is already stored; a lost audit row must not fail the caller
        try:
            await self._store.storage.append_audit_log(user_id, action, self._clock(), metadata)
        except StorageError as e:
            logger.error("Failed to write audit log for user %s: %s", user_id, e)


def _required(data: Mapping[str, Any], name: str) -> Any:
    value = data.get(name)
    if value is None:
        raise ValidationError(f"Field '{name}' is required")
    return value
