"""
Tests for email-level sealing and the PlainEmail model.
"""

from __future__ import annotations

import json
from dataclasses import replace

import pytest

from mail_vault import (
    AesGcmCipher,
    AuthenticationError,
    EmailCipher,
    EmailContext,
    FormatError,
    PlainEmail,
    SecureKey,
    ValidationError,
)


@pytest.fixture
def email() -> PlainEmail:
    return PlainEmail(
        to=["a@example.com", "b@example.com"],
        from_address="alerts@wpma.io",
        subject="Disk almost full",
        body="Grüße: 95% used on /var",
        attachments=[{"name": "df.txt", "size": 120}],
        headers={"X-WPMA-Type": "alert"},
        timestamp="2026-01-03T12:00:00+00:00",
        message_id="alert_1_1",
    )


class TestEmailCipher:
    def test_round_trip(self, email):
        key = SecureKey.generate()
        assert EmailCipher.decrypt(EmailCipher.encrypt(email, key), key) == email

    def test_ciphertext_hides_body(self, email):
        payload = EmailCipher.encrypt(email, SecureKey.generate())
        assert b"Disk almost full" not in payload.ciphertext

    def test_wrong_key(self, email):
        payload = EmailCipher.encrypt(email, SecureKey.generate())
        with pytest.raises(AuthenticationError):
            EmailCipher.decrypt(payload, SecureKey.generate())

    def test_authentic_but_malformed_plaintext(self):
        key = SecureKey.generate()
        payload = AesGcmCipher.encrypt(key, b'{"to": "x@example.com"}')
        with pytest.raises(FormatError):
            EmailCipher.decrypt(payload, key)

    @pytest.mark.parametrize(
        "changes",
        [
            {"headers": {"X-Retry": 3}},
            {"message_id": 42},
            {"to": ("a@example.com",)},
            {"attachments": [object()]},
        ],
    )
    def test_unreadable_email_is_rejected_before_sealing(self, email, changes):
        with pytest.raises(ValidationError):
            EmailCipher.encrypt(replace(email, **changes), SecureKey.generate())

    def test_document_round_trip(self):
        key = SecureKey.generate()
        document = {"emails": [], "total_emails": 0}
        assert EmailCipher.open_document(EmailCipher.seal_document(document, key), key) == document

    def test_document_must_be_object(self):
        key = SecureKey.generate()
        payload = AesGcmCipher.encrypt(key, b"[1, 2, 3]")
        with pytest.raises(FormatError):
            EmailCipher.open_document(payload, key)


class TestPlainEmail:
    def test_canonical_json_is_sorted_and_compact(self, email):
        raw = email.to_canonical_json()
        assert raw == json.dumps(
            json.loads(raw), sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
        assert PlainEmail.from_canonical_json(raw) == email

    def test_from_input_body_falls_back_to_html(self):
        email = PlainEmail.from_input(
            {"to": "x@example.com", "subject": "Hi", "html": "<p>Hi</p>", "messageId": 12}
        )
        assert email.body == "<p>Hi</p>"
        assert email.message_id == "12"
        assert email.from_address == ""
        assert email.attachments == []

    def test_from_input_requires_recipient(self):
        with pytest.raises(ValidationError):
            PlainEmail.from_input({"subject": "No recipient", "body": "x"})

    def test_from_input_requires_subject(self):
        with pytest.raises(ValidationError):
            PlainEmail.from_input({"to": "x@example.com", "body": "x"})

    @pytest.mark.parametrize("headers", [["X-Type: alert"], "X-Type: alert"])
    def test_from_input_rejects_non_mapping_headers(self, headers):
        with pytest.raises(ValidationError):
            PlainEmail.from_input({"to": "x@example.com", "subject": "Hi", "headers": headers})

    def test_from_dict_rejects_bad_types(self, email):
        data = email.to_dict()
        data["headers"] = {"X-Count": 3}
        with pytest.raises(FormatError):
            PlainEmail.from_dict(data)


class TestEmailContext:
    def test_parse(self):
        assert EmailContext.parse("ALERT") is EmailContext.ALERT
        assert EmailContext.parse(EmailContext.REPORT) is EmailContext.REPORT
        assert str(EmailContext.RECOVERED) == "recovered"

    def test_unknown_context(self):
        with pytest.raises(ValidationError):
            EmailContext.parse("marketing")
