"""
PostgreSQL storage backend for the email vault.

This module provides:
- PostgresStorage: asyncpg-backed implementation of VaultStorage
- SCHEMA_SQL: DDL for the vault tables

Architecture:
- Ciphertext, nonce and tag are stored hex-encoded (``encrypted_data``,
  ``iv``, ``auth_tag``) so rows match the recovery file format
- Per-user salts live in ``user_email_salts`` with a primary key on
  ``user_id``; creation is ``INSERT ... ON CONFLICT DO NOTHING`` followed by
  a re-read, so concurrent first encryptions agree on one salt
- ``downloaded`` flips through conditional UPDATEs, never read-then-write
- The ``users`` table belongs to the platform and is only read here

Every call is bounded by ``timeout`` seconds; a timeout surfaces as
StoreTimeoutError.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import asyncpg

from .crypto import CIPHER_VERSION, EncryptedPayload
from .errors import StorageError, StoreTimeoutError
from .models import (
    CleanupStats,
    EmailContext,
    EncryptedEmailRecord,
    RecoveryPackage,
    UserAccount,
    UserKeyMaterial,
)
from .storage import VaultStorage

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_email_salts (
    user_id INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    salt VARCHAR(128) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS encrypted_emails (
    id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    context VARCHAR(50) NOT NULL
        CHECK (context IN ('notification', 'alert', 'report', 'recovered', 'general')),
    encrypted_data TEXT NOT NULL,
    iv VARCHAR(32) NOT NULL,
    auth_tag VARCHAR(32) NOT NULL,
    encryption_version VARCHAR(10) NOT NULL DEFAULT '1.0',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_encrypted_emails_user_created
    ON encrypted_emails(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_encrypted_emails_expires
    ON encrypted_emails(expires_at);

CREATE TABLE IF NOT EXISTS email_recovery_exports (
    id UUID PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    encrypted_data TEXT NOT NULL,
    iv VARCHAR(32) NOT NULL,
    auth_tag VARCHAR(32) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL,
    downloaded BOOLEAN NOT NULL DEFAULT false
);
CREATE INDEX IF NOT EXISTS idx_recovery_exports_expires
    ON email_recovery_exports(expires_at);

CREATE TABLE IF NOT EXISTS email_audit_logs (
    id SERIAL PRIMARY KEY,
    user_id INTEGER,
    action VARCHAR(50) NOT NULL,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS email_recovery_logs (
    id SERIAL PRIMARY KEY,
    user_id INTEGER,
    recovery_scenario VARCHAR(50) NOT NULL,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS email_encryption_stats (
    id SERIAL PRIMARY KEY,
    cleanup_date TIMESTAMPTZ NOT NULL,
    emails_deleted INTEGER DEFAULT 0,
    exports_deleted INTEGER DEFAULT 0,
    total_emails INTEGER DEFAULT 0,
    total_exports INTEGER DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``DELETE 3``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _unhex(value: str) -> bytes:
    """Decode a hex column; corrupt values become empty and fail authentication later."""
    try:
        return bytes.fromhex(value)
    except (TypeError, ValueError):
        return b""


def _parse_export_id(export_id: str) -> Optional[UUID]:
    try:
        return UUID(str(export_id))
    except ValueError:
        return None


class PostgresStorage(VaultStorage):
    """PostgreSQL storage backend for encrypted emails and recovery packages."""

    def __init__(self, pool: asyncpg.Pool, timeout: float = 10.0) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
            timeout: Per-call timeout in seconds
        """
        self._pool = pool
        self._timeout = timeout

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def create_schema(self) -> None:
        """Create vault tables if they do not exist."""
        await self._execute(SCHEMA_SQL, what="create schema")

    # -------------------------------------------------------------------------
    # Low-level helpers
    # -------------------------------------------------------------------------

    async def _execute(self, query: str, *args: Any, what: str) -> str:
        try:
            return await self._pool.execute(query, *args, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError(f"Timed out: {what}")
        except Exception as e:
            raise StorageError(f"Failed to {what}: {e}")

    async def _fetchrow(self, query: str, *args: Any, what: str) -> Optional[asyncpg.Record]:
        try:
            return await self._pool.fetchrow(query, *args, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError(f"Timed out: {what}")
        except Exception as e:
            raise StorageError(f"Failed to {what}: {e}")

    async def _fetch(self, query: str, *args: Any, what: str) -> List[asyncpg.Record]:
        try:
            return await self._pool.fetch(query, *args, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError(f"Timed out: {what}")
        except Exception as e:
            raise StorageError(f"Failed to {what}: {e}")

    # -------------------------------------------------------------------------
    # Accounts and key material
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        row = await self._fetchrow(
            "SELECT id, email, password_hash FROM users WHERE id = $1",
            user_id,
            what="get user",
        )
        if row is None:
            return None
        return UserAccount(user_id=row["id"], email=row["email"], password_hash=row["password_hash"])

    async def get_salt(self, user_id: int) -> Optional[bytes]:
        row = await self._fetchrow(
            "SELECT salt FROM user_email_salts WHERE user_id = $1", user_id, what="get salt"
        )
        return bytes.fromhex(row["salt"]) if row else None

    async def insert_salt_if_absent(self, material: UserKeyMaterial) -> bytes:
        query = """
            INSERT INTO user_email_salts (user_id, salt, created_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id) DO NOTHING
            RETURNING salt
        """
        row = await self._fetchrow(
            query, material.user_id, material.salt.hex(), material.created_at, what="store salt"
        )
        if row is not None:
            return bytes.fromhex(row["salt"])

        # Lost the race: the winner's salt is authoritative
        winner = await self.get_salt(material.user_id)
        if winner is None:
            raise StorageError(f"Salt for user {material.user_id} vanished after conflict")
        return winner

    # -------------------------------------------------------------------------
    # Encrypted emails
    # -------------------------------------------------------------------------

    async def insert_record(
        self,
        owner_user_id: int,
        context: EmailContext,
        payload: EncryptedPayload,
        created_at: datetime,
        expires_at: datetime,
        cipher_version: str = CIPHER_VERSION,
    ) -> int:
        query = """
            INSERT INTO encrypted_emails (
                user_id, context, encrypted_data, iv, auth_tag, encryption_version,
                created_at, expires_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING id
        """
        encoded = payload.to_hex()
        row = await self._fetchrow(
            query,
            owner_user_id,
            context.value,
            encoded["encrypted_data"],
            encoded["iv"],
            encoded["auth_tag"],
            cipher_version,
            created_at,
            expires_at,
            what="insert encrypted email",
        )
        return row["id"]

    async def list_records(
        self,
        owner_user_id: int,
        now: datetime,
        context: Optional[EmailContext] = None,
        limit: int = 100,
    ) -> List[EncryptedEmailRecord]:
        query = """
            SELECT id, user_id, context, encrypted_data, iv, auth_tag, encryption_version,
                   created_at, expires_at
            FROM encrypted_emails
            WHERE user_id = $1 AND expires_at > $2
              AND ($3::TEXT IS NULL OR context = $3)
            ORDER BY created_at DESC, id DESC
            LIMIT $4
        """
        rows = await self._fetch(
            query,
            owner_user_id,
            now,
            context.value if context else None,
            limit,
            what="list encrypted emails",
        )
        return [self._row_to_record(row) for row in rows]

    async def count_records_by_context(
        self, owner_user_id: int, now: datetime
    ) -> Dict[EmailContext, int]:
        rows = await self._fetch(
            """
            SELECT context, COUNT(*) AS count FROM encrypted_emails
            WHERE user_id = $1 AND expires_at > $2
            GROUP BY context
            """,
            owner_user_id,
            now,
            what="count encrypted emails",
        )
        counts = {ctx: 0 for ctx in EmailContext}
        for row in rows:
            counts[EmailContext(row["context"])] = row["count"]
        return counts

    async def count_active_records(self, now: datetime) -> int:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS count FROM encrypted_emails WHERE expires_at > $1",
            now,
            what="count encrypted emails",
        )
        return row["count"] if row else 0

    async def delete_expired_records(self, now: datetime) -> int:
        status = await self._execute(
            "DELETE FROM encrypted_emails WHERE expires_at < $1", now, what="purge emails"
        )
        return _affected(status)

    # -------------------------------------------------------------------------
    # Recovery packages
    # -------------------------------------------------------------------------

    async def insert_package(self, package: RecoveryPackage) -> None:
        query = """
            INSERT INTO email_recovery_exports (
                id, user_id, encrypted_data, iv, auth_tag, created_at, expires_at, downloaded
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """
        encoded = package.payload.to_hex()
        await self._execute(
            query,
            UUID(package.export_id),
            package.owner_user_id,
            encoded["encrypted_data"],
            encoded["iv"],
            encoded["auth_tag"],
            package.created_at,
            package.expires_at,
            package.downloaded,
            what="store recovery export",
        )

    async def get_package(self, export_id: str) -> Optional[RecoveryPackage]:
        export_uuid = _parse_export_id(export_id)
        if export_uuid is None:
            return None
        row = await self._fetchrow(
            """
            SELECT id, user_id, encrypted_data, iv, auth_tag, created_at, expires_at, downloaded
            FROM email_recovery_exports WHERE id = $1
            """,
            export_uuid,
            what="get recovery export",
        )
        return self._row_to_package(row) if row else None

    async def list_packages(self, owner_user_id: int, now: datetime) -> List[RecoveryPackage]:
        rows = await self._fetch(
            """
            SELECT id, user_id, encrypted_data, iv, auth_tag, created_at, expires_at, downloaded
            FROM email_recovery_exports
            WHERE user_id = $1 AND expires_at > $2
            ORDER BY created_at DESC
            """,
            owner_user_id,
            now,
            what="list recovery exports",
        )
        return [self._row_to_package(row) for row in rows]

    async def mark_package_downloaded(self, export_id: str) -> bool:
        return await self._flip_downloaded(export_id, to=True)

    async def reset_package_downloaded(self, export_id: str) -> bool:
        return await self._flip_downloaded(export_id, to=False)

    async def _flip_downloaded(self, export_id: str, to: bool) -> bool:
        export_uuid = _parse_export_id(export_id)
        if export_uuid is None:
            return False
        row = await self._fetchrow(
            """
            UPDATE email_recovery_exports SET downloaded = $2
            WHERE id = $1 AND downloaded = $3
            RETURNING id
            """,
            export_uuid,
            to,
            not to,
            what="update recovery export",
        )
        return row is not None

    async def count_active_packages(self, now: datetime) -> int:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS count FROM email_recovery_exports WHERE expires_at > $1",
            now,
            what="count recovery exports",
        )
        return row["count"] if row else 0

    async def delete_expired_packages(self, now: datetime) -> int:
        status = await self._execute(
            "DELETE FROM email_recovery_exports WHERE expires_at < $1",
            now,
            what="purge recovery exports",
        )
        return _affected(status)

    # -------------------------------------------------------------------------
    # Operation logs and housekeeping
    # -------------------------------------------------------------------------

    async def append_audit_log(
        self, user_id: Optional[int], action: str, created_at: datetime, metadata: Dict[str, Any]
    ) -> None:
        await self._execute(
            """
            INSERT INTO email_audit_logs (user_id, action, metadata, created_at)
            VALUES ($1, $2, $3::JSONB, $4)
            """,
            user_id,
            action,
            json.dumps(metadata),
            created_at,
            what="write audit log",
        )

    async def append_recovery_log(
        self, user_id: Optional[int], scenario: str, created_at: datetime, metadata: Dict[str, Any]
    ) -> None:
        await self._execute(
            """
            INSERT INTO email_recovery_logs (user_id, recovery_scenario, metadata, created_at)
            VALUES ($1, $2, $3::JSONB, $4)
            """,
            user_id,
            scenario,
            json.dumps(metadata),
            created_at,
            what="write recovery log",
        )

    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        status = await self._execute(
            "DELETE FROM email_audit_logs WHERE created_at < $1", cutoff, what="purge audit logs"
        )
        return _affected(status)

    async def delete_recovery_logs_before(self, cutoff: datetime) -> int:
        status = await self._execute(
            "DELETE FROM email_recovery_logs WHERE created_at < $1",
            cutoff,
            what="purge recovery logs",
        )
        return _affected(status)

    async def record_cleanup_stats(self, stats: CleanupStats) -> None:
        await self._execute(
            """
            INSERT INTO email_encryption_stats (
                cleanup_date, emails_deleted, exports_deleted, total_emails, total_exports
            ) VALUES ($1, $2, $3, $4, $5)
            """,
            stats.cleanup_date,
            stats.emails_deleted,
            stats.exports_deleted,
            stats.total_emails,
            stats.total_exports,
            what="write cleanup stats",
        )

    async def compact(self) -> None:
        # VACUUM cannot run inside a transaction block; pool.execute runs it bare
        await self._execute("VACUUM ANALYZE encrypted_emails", what="vacuum encrypted emails")
        await self._execute(
            "VACUUM ANALYZE email_recovery_exports", what="vacuum recovery exports"
        )

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: asyncpg.Record) -> EncryptedEmailRecord:
        """Convert database row to EncryptedEmailRecord."""
        return EncryptedEmailRecord(
            id=row["id"],
            owner_user_id=row["user_id"],
            context=EmailContext(row["context"]),
            ciphertext=_unhex(row["encrypted_data"]),
            nonce=_unhex(row["iv"]),
            auth_tag=_unhex(row["auth_tag"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            cipher_version=row["encryption_version"],
        )

    @staticmethod
    def _row_to_package(row: asyncpg.Record) -> RecoveryPackage:
        """Convert database row to RecoveryPackage."""
        return RecoveryPackage(
            export_id=str(row["id"]),
            owner_user_id=row["user_id"],
            ciphertext=_unhex(row["encrypted_data"]),
            nonce=_unhex(row["iv"]),
            auth_tag=_unhex(row["auth_tag"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            downloaded=row["downloaded"],
        )
