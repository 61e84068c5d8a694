"""
Email-level authenticated encryption.

EmailCipher canonicalizes a PlainEmail (or any JSON document, for recovery
bundles) and seals it with AES-256-GCM. Tag verification always happens
before any decoding, so a tampered or wrong-key payload fails with
AuthenticationError and never yields partial plaintext.
"""

from __future__ import annotations

import json
from typing import Any, Dict

from .crypto import AesGcmCipher, EncryptedPayload, SecureKey
from .errors import FormatError, ValidationError
from .models import PlainEmail


class EmailCipher:
    """Encrypts and decrypts single emails and JSON documents."""

    @staticmethod
    def encrypt(email: PlainEmail, key: SecureKey) -> EncryptedPayload:
        """
        Encrypt one email.

        The email is checked against the same rules :meth:`decrypt` applies,
        so anything sealed here can be read back.

        Raises:
            ValidationError: If the email would not decode after decryption
        """
        try:
            PlainEmail.from_dict(email.to_dict())
            plaintext = email.to_canonical_json()
        except FormatError as e:
            raise ValidationError(str(e))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Email is not JSON-serializable: {e}")
        return AesGcmCipher.encrypt(key, plaintext)

    @staticmethod
    def decrypt(payload: EncryptedPayload, key: SecureKey) -> PlainEmail:
        """
        Decrypt one email.

        Raises:
            AuthenticationError: If the tag does not verify
            FormatError: If the plaintext is not a well-formed email
        """
        plaintext = AesGcmCipher.decrypt(key, payload)
        return PlainEmail.from_canonical_json(plaintext)

    @staticmethod
    def seal_document(document: Dict[str, Any], key: SecureKey) -> EncryptedPayload:
        """Encrypt a JSON-serializable document (e.g. a recovery bundle)."""
        raw = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return AesGcmCipher.encrypt(key, raw.encode("utf-8"))

    @staticmethod
    def open_document(payload: EncryptedPayload, key: SecureKey) -> Dict[str, Any]:
        """
        Decrypt a JSON document sealed with :meth:`seal_document`.

        Raises:
            AuthenticationError: If the tag does not verify
            FormatError: If the plaintext is not a JSON object
        """
        plaintext = AesGcmCipher.decrypt(key, payload)
        try:
            document = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise FormatError("Sealed document is not valid JSON") from None
        if not isinstance(document, dict):
            raise FormatError("Sealed document is not an object")
        return document
