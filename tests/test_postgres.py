"""
PostgreSQL backend tests. Skipped unless DATABASE_URL is set.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import asyncpg

from conftest import ALICE_PASSWORD, hash_password, sample_email
from mail_vault import (
    EmailContext,
    EmailVault,
    EncryptedPayload,
    PostgresStorage,
    RecoveryPackage,
    UserKeyMaterial,
    VaultConfig,
)


async def _add_user(pool: asyncpg.Pool, email: str) -> int:
    return await pool.fetchval(
        "INSERT INTO users (email, password_hash) VALUES ($1, $2) RETURNING id",
        email,
        hash_password(ALICE_PASSWORD),
    )


async def test_salt_insert_keeps_first_winner(pg_pool, postgres_storage: PostgresStorage):
    user_id = await _add_user(pg_pool, f"{uuid4()}@example.com")
    candidates = [UserKeyMaterial(user_id, bytes([i]) * 64) for i in range(4)]

    stored = await asyncio.gather(*(postgres_storage.insert_salt_if_absent(m) for m in candidates))

    assert len(set(stored)) == 1
    assert await postgres_storage.get_salt(user_id) == stored[0]


async def test_records_filter_expired_and_order(pg_pool, postgres_storage: PostgresStorage):
    user_id = await _add_user(pg_pool, f"{uuid4()}@example.com")
    now = datetime.now(timezone.utc)
    payload = EncryptedPayload(ciphertext=b"\x01\x02", nonce=b"\x00" * 16, auth_tag=b"\xff" * 16)

    await postgres_storage.insert_record(
        user_id, EmailContext.ALERT, payload, now - timedelta(hours=2), now - timedelta(seconds=1)
    )
    older = await postgres_storage.insert_record(
        user_id, EmailContext.ALERT, payload, now - timedelta(hours=1), now + timedelta(hours=1)
    )
    newer = await postgres_storage.insert_record(
        user_id, EmailContext.REPORT, payload, now, now + timedelta(hours=1)
    )

    records = await postgres_storage.list_records(user_id, now)
    assert [r.id for r in records] == [newer, older]
    assert records[0].payload == payload

    counts = await postgres_storage.count_records_by_context(user_id, now)
    assert counts[EmailContext.ALERT] == 1
    assert counts[EmailContext.REPORT] == 1

    assert await postgres_storage.delete_expired_records(now) == 1


async def test_downloaded_flag_is_conditional(pg_pool, postgres_storage: PostgresStorage):
    user_id = await _add_user(pg_pool, f"{uuid4()}@example.com")
    now = datetime.now(timezone.utc)
    package = RecoveryPackage(
        export_id=str(uuid4()),
        owner_user_id=user_id,
        ciphertext=b"\x01",
        nonce=b"\x00" * 16,
        auth_tag=b"\x00" * 16,
        created_at=now,
        expires_at=now + timedelta(days=7),
    )
    await postgres_storage.insert_package(package)

    assert await postgres_storage.mark_package_downloaded(package.export_id)
    assert not await postgres_storage.mark_package_downloaded(package.export_id)
    assert await postgres_storage.reset_package_downloaded(package.export_id)
    assert await postgres_storage.get_package("not-a-uuid") is None


async def test_export_import_round_trip(pg_pool, postgres_storage: PostgresStorage):
    owner = await _add_user(pg_pool, f"{uuid4()}@example.com")
    target = await _add_user(pg_pool, f"{uuid4()}@example.com")
    config = VaultConfig(
        master_secret="pg-master-secret",
        storage_salt="pg-storage-salt",
        recovery_salt="pg-recovery-salt",
    )
    vault = EmailVault.new(postgres_storage, config)

    for n in range(3):
        await vault.store_encrypted_email(owner, sample_email(n))
    export = await vault.exporter.export(owner, ALICE_PASSWORD)
    result = await vault.importer.import_package(export.export_id, ALICE_PASSWORD, target)

    assert result.imported_count == 3
    listing = await vault.retrieve_user_emails(target, context="recovered")
    assert len(listing) == 3

    again = await vault.importer.import_package(export.export_id, ALICE_PASSWORD, target)
    assert again.already_imported
