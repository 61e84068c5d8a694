"""
Data model for archived emails and recovery packages.

This module provides:
- EmailContext: Closed set of archival contexts
- PlainEmail: Canonical plaintext email (the thing that gets encrypted)
- EncryptedEmailRecord: Stored ciphertext row
- UserKeyMaterial: Per-user salt
- UserAccount: Read-only view of a platform account
- RecoveryPackage: Stored password-sealed export
- Result types returned by the services
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .crypto import CIPHER_VERSION, EncryptedPayload
from .errors import FormatError, ValidationError


class EmailContext(Enum):
    """Why an email was archived (matches the ``context`` column)."""

    NOTIFICATION = "notification"
    ALERT = "alert"
    REPORT = "report"
    RECOVERED = "recovered"
    GENERAL = "general"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Union[str, EmailContext]) -> EmailContext:
        """
        Parse from a string.

        Raises:
            ValidationError: If the value is not a known context
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Unknown email context: {value}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_EMAIL_FIELDS = ("to", "from", "subject", "body", "attachments", "headers", "timestamp", "message_id")


@dataclass(frozen=True)
class PlainEmail:
    """
    Canonical plaintext email.

    Serializes to compact JSON with sorted keys so that encrypt/decrypt
    round-trips are byte-exact.
    """

    to: Union[str, List[str]]
    from_address: str
    subject: str
    body: str
    attachments: List[Any] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "to": self.to,
            "from": self.from_address,
            "subject": self.subject,
            "body": self.body,
            "attachments": list(self.attachments),
            "headers": dict(self.headers),
            "timestamp": self.timestamp,
            "message_id": self.message_id,
        }

    def to_canonical_json(self) -> bytes:
        return json.dumps(
            self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> PlainEmail:
        """
        Rebuild from decrypted structured data.

        Raises:
            FormatError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise FormatError("Email payload is not an object")
        missing = [k for k in _EMAIL_FIELDS if k not in data]
        if missing:
            raise FormatError(f"Email payload missing fields: {', '.join(missing)}")

        to = data["to"]
        if not (isinstance(to, str) or (isinstance(to, list) and all(isinstance(t, str) for t in to))):
            raise FormatError("Field 'to' must be a string or list of strings")
        for name in ("from", "subject", "body", "timestamp"):
            if not isinstance(data[name], str):
                raise FormatError(f"Field '{name}' must be a string")
        if not isinstance(data["attachments"], list):
            raise FormatError("Field 'attachments' must be a list")
        headers = data["headers"]
        if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise FormatError("Field 'headers' must map strings to strings")
        if data["message_id"] is not None and not isinstance(data["message_id"], str):
            raise FormatError("Field 'message_id' must be a string or null")

        return cls(
            to=to,
            from_address=data["from"],
            subject=data["subject"],
            body=data["body"],
            attachments=data["attachments"],
            headers=headers,
            timestamp=data["timestamp"],
            message_id=data["message_id"],
        )

    @classmethod
    def from_canonical_json(cls, raw: bytes) -> PlainEmail:
        """
        Parse canonical JSON bytes.

        Raises:
            FormatError: If the bytes are not well-formed
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise FormatError("Email payload is not valid JSON") from None
        return cls.from_dict(data)

    @classmethod
    def from_input(cls, email_data: Mapping[str, Any]) -> PlainEmail:
        """
        Build from an archival caller's loosely shaped dict.

        Accepts ``from`` or ``from_address``; ``body`` falls back to ``html``
        then ``text``. Missing attachments, headers and timestamp get defaults.

        Raises:
            ValidationError: If required input is missing or malformed
        """
        if not isinstance(email_data, Mapping):
            raise ValidationError("Email data must be a mapping")
        if not email_data.get("to"):
            raise ValidationError("Email recipient ('to') is required")
        if email_data.get("subject") is None:
            raise ValidationError("Email subject is required")

        body = email_data.get("body")
        if body is None:
            body = email_data.get("html") or email_data.get("text") or ""
        raw_headers = email_data.get("headers") or {}
        if not isinstance(raw_headers, Mapping):
            raise ValidationError("Email headers must be a mapping")
        headers = {str(k): str(v) for k, v in raw_headers.items()}
        timestamp = email_data.get("timestamp")
        if isinstance(timestamp, datetime):
            timestamp = timestamp.isoformat()
        message_id = email_data.get("message_id", email_data.get("messageId"))

        try:
            return cls.from_dict(
                {
                    "to": email_data["to"],
                    "from": email_data.get("from", email_data.get("from_address", "")) or "",
                    "subject": str(email_data["subject"]),
                    "body": body,
                    "attachments": list(email_data.get("attachments") or []),
                    "headers": headers,
                    "timestamp": timestamp or utcnow().isoformat(),
                    "message_id": None if message_id is None else str(message_id),
                }
            )
        except FormatError as e:
            raise ValidationError(str(e))


@dataclass(frozen=True)
class EncryptedEmailRecord:
    """Stored ciphertext row. Immutable once written."""

    id: int
    owner_user_id: int
    context: EmailContext
    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes
    created_at: datetime
    expires_at: datetime
    cipher_version: str = CIPHER_VERSION

    @property
    def payload(self) -> EncryptedPayload:
        return EncryptedPayload(ciphertext=self.ciphertext, nonce=self.nonce, auth_tag=self.auth_tag)


@dataclass(frozen=True)
class UserKeyMaterial:
    """Per-user salt, created once and never changed."""

    user_id: int
    salt: bytes
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class UserAccount:
    """Platform account as seen by this package."""

    user_id: int
    email: str
    password_hash: str


@dataclass(frozen=True)
class RecoveryPackage:
    """Password-sealed export of a user's emails."""

    export_id: str
    owner_user_id: int
    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes
    created_at: datetime
    expires_at: datetime
    downloaded: bool = False

    @property
    def payload(self) -> EncryptedPayload:
        return EncryptedPayload(ciphertext=self.ciphertext, nonce=self.nonce, auth_tag=self.auth_tag)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class DecryptedEmail:
    """An archived email after decryption, with its row metadata."""

    id: int
    context: EmailContext
    created_at: datetime
    email: PlainEmail


@dataclass
class DecryptedListing:
    """Result of decrypting a listing; undecryptable rows are counted, not raised."""

    emails: List[DecryptedEmail] = field(default_factory=list)
    skipped_ids: List[int] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.skipped_ids)

    def __len__(self) -> int:
        return len(self.emails)


@dataclass
class ExportResult:
    """Result of a recovery export."""

    export_id: str
    expires_at: datetime
    email_count: int
    skipped: int = 0


@dataclass
class ImportResult:
    """Result of a recovery import."""

    imported_count: int
    total_count: int
    target_user_id: int
    failed_count: int = 0
    already_imported: bool = False


@dataclass
class CleanupStats:
    """One row of the daily cleanup statistics."""

    cleanup_date: datetime
    emails_deleted: int
    exports_deleted: int
    total_emails: int
    total_exports: int
