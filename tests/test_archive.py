"""
Tests for the archival entry point.
"""

from __future__ import annotations

import logging

import pytest

from conftest import ALICE, BOB, sample_email
from mail_vault import (
    EmailContext,
    EmailVault,
    InMemoryStorage,
    PlainEmail,
    StorageError,
    ValidationError,
)


class AuditlessStorage(InMemoryStorage):
    async def append_audit_log(self, user_id, action, created_at, metadata):
        raise StorageError("audit table unavailable")


async def test_store_and_retrieve(vault, memory_storage):
    record_id = await vault.store_encrypted_email(ALICE, sample_email(1), "alert")

    listing = await vault.retrieve_user_emails(ALICE)
    (item,) = listing.emails
    assert item.id == record_id
    assert item.context is EmailContext.ALERT
    assert item.email.subject == "Subject 1"
    assert item.email.body == "Body of email 1"
    assert listing.skipped == 0

    (row,) = memory_storage.audit_logs
    assert row.kind == "encrypt"
    assert row.metadata == {"email_id": record_id, "context": "alert"}


async def test_stored_row_holds_no_plaintext(vault, memory_storage, clock):
    await vault.store_encrypted_email(ALICE, sample_email(1, body="top secret body"))
    (record,) = await memory_storage.list_records(ALICE, clock())
    assert b"top secret body" not in record.ciphertext


async def test_retrieve_is_per_user(vault):
    await vault.store_encrypted_email(ALICE, sample_email(1))
    assert len(await vault.retrieve_user_emails(BOB)) == 0


async def test_retrieve_by_context(vault):
    await vault.store_encrypted_email(ALICE, sample_email(1), EmailContext.ALERT)
    await vault.store_encrypted_email(ALICE, sample_email(2), EmailContext.REPORT)

    listing = await vault.retrieve_user_emails(ALICE, context="report")
    assert [e.email.subject for e in listing.emails] == ["Subject 2"]


async def test_unknown_context_is_rejected(vault):
    with pytest.raises(ValidationError):
        await vault.store_encrypted_email(ALICE, sample_email(1), "marketing")


async def test_missing_recipient_is_rejected(vault):
    with pytest.raises(ValidationError):
        await vault.store_encrypted_email(ALICE, {"subject": "x", "body": "y"})


async def test_archive_alert(vault):
    await vault.archiver.archive_alert(
        ALICE, {"recipient": "ops@example.com", "subject": "CPU high", "severity": "high"}
    )
    (item,) = (await vault.retrieve_user_emails(ALICE)).emails
    assert item.context is EmailContext.ALERT
    assert item.email.subject == "[ALERT] CPU high"
    assert item.email.from_address == "alerts@wpma.io"
    assert item.email.headers["X-WPMA-Severity"] == "high"
    assert item.email.headers["X-WPMA-User-ID"] == str(ALICE)
    assert item.email.message_id.startswith("alert_")


async def test_archive_report_and_notification(vault):
    await vault.archiver.archive_report(
        ALICE, {"recipient": "ops@example.com", "subject": "Weekly", "content": "All good"}
    )
    await vault.archiver.archive_notification(
        ALICE, {"recipient": "ops@example.com", "subject": "Hello", "message": "Hi there"}
    )

    stats = await vault.archiver.email_stats(ALICE)
    assert stats["report"] == 1
    assert stats["notification"] == 1
    assert stats["alert"] == 0
    assert stats["total"] == 2

    subjects = {e.email.subject for e in (await vault.retrieve_user_emails(ALICE)).emails}
    assert subjects == {"[REPORT] Weekly", "Hello"}


async def test_archive_alert_requires_recipient(vault):
    with pytest.raises(ValidationError):
        await vault.archiver.archive_alert(ALICE, {"subject": "No one to tell"})


async def test_lost_audit_row_does_not_fail_archival(config, clock):
    vault = EmailVault.new(AuditlessStorage(), config, clock=clock)
    record_id = await vault.store_encrypted_email(ALICE, sample_email(1))
    assert record_id == 1
    assert len(await vault.retrieve_user_emails(ALICE)) == 1


async def test_plaintext_never_logged(vault, caplog):
    caplog.set_level(logging.DEBUG, logger="mail_vault")
    await vault.store_encrypted_email(ALICE, sample_email(1, body="very private words"))
    await vault.retrieve_user_emails(ALICE)
    assert "very private words" not in caplog.text


async def test_unreadable_plain_email_is_not_stored(vault, memory_storage, clock):
    email = PlainEmail(
        to="ops@example.com",
        from_address="alerts@wpma.io",
        subject="Retry",
        body="Retrying",
        headers={"X-Retry": 3},
    )
    with pytest.raises(ValidationError):
        await vault.store_encrypted_email(ALICE, email)
    assert await memory_storage.list_records(ALICE, clock()) == []
