"""
Storage abstractions for the email vault.

This module provides:
- VaultStorage: Abstract contract for storage backends
- InMemoryStorage: asyncio-safe in-memory implementation for tests and embedding

Backends only move rows; they never see keys or plaintext. Anything time
dependent takes ``now`` from the caller so the services own the clock.
"""

from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .crypto import CIPHER_VERSION, EncryptedPayload
from .models import (
    CleanupStats,
    EmailContext,
    EncryptedEmailRecord,
    RecoveryPackage,
    UserAccount,
    UserKeyMaterial,
)


@dataclass
class LogRow:
    """Audit or recovery-operation log row. Never holds plaintext or secrets."""

    id: int
    user_id: Optional[int]
    kind: str  # audit action or recovery scenario
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


class VaultStorage(ABC):
    """
    Abstract storage interface for the email vault.

    All methods are async to support both in-memory and database backends.
    """

    # Accounts (read-only here) and key material

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        """Get a platform account."""
        ...

    @abstractmethod
    async def get_salt(self, user_id: int) -> Optional[bytes]:
        """Get a user's salt, if one exists."""
        ...

    @abstractmethod
    async def insert_salt_if_absent(self, material: UserKeyMaterial) -> bytes:
        """
        Atomically store a salt unless the user already has one.

        Returns:
            The salt that is stored after the call (the caller's or the
            earlier winner's)
        """
        ...

    # Encrypted emails

    @abstractmethod
    async def insert_record(
        self,
        owner_user_id: int,
        context: EmailContext,
        payload: EncryptedPayload,
        created_at: datetime,
        expires_at: datetime,
        cipher_version: str = CIPHER_VERSION,
    ) -> int:
        """Insert an encrypted email row and return its id."""
        ...

    @abstractmethod
    async def list_records(
        self,
        owner_user_id: int,
        now: datetime,
        context: Optional[EmailContext] = None,
        limit: int = 100,
    ) -> List[EncryptedEmailRecord]:
        """List rows with ``expires_at > now``, newest first."""
        ...

    @abstractmethod
    async def count_records_by_context(
        self, owner_user_id: int, now: datetime
    ) -> Dict[EmailContext, int]:
        """Count a user's active rows per context."""
        ...

    @abstractmethod
    async def count_active_records(self, now: datetime) -> int:
        """Count all active rows."""
        ...

    @abstractmethod
    async def delete_expired_records(self, now: datetime) -> int:
        """Delete rows with ``expires_at < now``."""
        ...

    # Recovery packages

    @abstractmethod
    async def insert_package(self, package: RecoveryPackage) -> None:
        """Store a recovery package."""
        ...

    @abstractmethod
    async def get_package(self, export_id: str) -> Optional[RecoveryPackage]:
        """Get a recovery package by export id."""
        ...

    @abstractmethod
    async def list_packages(self, owner_user_id: int, now: datetime) -> List[RecoveryPackage]:
        """List a user's unexpired packages, newest first."""
        ...

    @abstractmethod
    async def mark_package_downloaded(self, export_id: str) -> bool:
        """
        Set ``downloaded`` only if it is currently false.

        Returns:
            True if this call flipped the flag
        """
        ...

    @abstractmethod
    async def reset_package_downloaded(self, export_id: str) -> bool:
        """Clear ``downloaded`` only if it is currently true."""
        ...

    @abstractmethod
    async def count_active_packages(self, now: datetime) -> int:
        """Count unexpired packages."""
        ...

    @abstractmethod
    async def delete_expired_packages(self, now: datetime) -> int:
        """Delete packages with ``expires_at < now``."""
        ...

    # Operation logs and housekeeping

    @abstractmethod
    async def append_audit_log(
        self, user_id: Optional[int], action: str, created_at: datetime, metadata: Dict[str, Any]
    ) -> None:
        """Append an audit row."""
        ...

    @abstractmethod
    async def append_recovery_log(
        self, user_id: Optional[int], scenario: str, created_at: datetime, metadata: Dict[str, Any]
    ) -> None:
        """Append a recovery-operation row."""
        ...

    @abstractmethod
    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        """Delete audit rows created before ``cutoff``."""
        ...

    @abstractmethod
    async def delete_recovery_logs_before(self, cutoff: datetime) -> int:
        """Delete recovery-operation rows created before ``cutoff``."""
        ...

    @abstractmethod
    async def record_cleanup_stats(self, stats: CleanupStats) -> None:
        """Persist one cleanup statistics row."""
        ...

    @abstractmethod
    async def compact(self) -> None:
        """Reclaim space in the email and package tables."""
        ...


class InMemoryStorage(VaultStorage):
    """
    In-memory storage implementation for testing.

    Uses asyncio.Lock for safe concurrent access.
    """

    def __init__(self) -> None:
        self._users: Dict[int, UserAccount] = {}
        self._salts: Dict[int, UserKeyMaterial] = {}
        self._records: Dict[int, EncryptedEmailRecord] = {}
        self._packages: Dict[str, RecoveryPackage] = {}
        self.audit_logs: List[LogRow] = []
        self.recovery_logs: List[LogRow] = []
        self.cleanup_stats: List[CleanupStats] = []
        self.compactions = 0
        self._record_ids = itertools.count(1)
        self._log_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    def add_user(self, account: UserAccount) -> None:
        """Register a platform account (the users table is not ours)."""
        self._users[account.user_id] = account

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        async with self._lock:
            return self._users.get(user_id)

    async def get_salt(self, user_id: int) -> Optional[bytes]:
        async with self._lock:
            material = self._salts.get(user_id)
            return material.salt if material else None

    async def insert_salt_if_absent(self, material: UserKeyMaterial) -> bytes:
        async with self._lock:
            return self._salts.setdefault(material.user_id, material).salt

    async def insert_record(
        self,
        owner_user_id: int,
        context: EmailContext,
        payload: EncryptedPayload,
        created_at: datetime,
        expires_at: datetime,
        cipher_version: str = CIPHER_VERSION,
    ) -> int:
        async with self._lock:
            record_id = next(self._record_ids)
            self._records[record_id] = EncryptedEmailRecord(
                id=record_id,
                owner_user_id=owner_user_id,
                context=context,
                ciphertext=payload.ciphertext,
                nonce=payload.nonce,
                auth_tag=payload.auth_tag,
                created_at=created_at,
                expires_at=expires_at,
                cipher_version=cipher_version,
            )
            return record_id

    async def list_records(
        self,
        owner_user_id: int,
        now: datetime,
        context: Optional[EmailContext] = None,
        limit: int = 100,
    ) -> List[EncryptedEmailRecord]:
        async with self._lock:
            rows = [
                r
                for r in self._records.values()
                if r.owner_user_id == owner_user_id
                and r.expires_at > now
                and (context is None or r.context == context)
            ]
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return rows[:limit]

    async def count_records_by_context(
        self, owner_user_id: int, now: datetime
    ) -> Dict[EmailContext, int]:
        counts = {ctx: 0 for ctx in EmailContext}
        async with self._lock:
            for r in self._records.values():
                if r.owner_user_id == owner_user_id and r.expires_at > now:
                    counts[r.context] += 1
        return counts

    async def count_active_records(self, now: datetime) -> int:
        async with self._lock:
            return sum(1 for r in self._records.values() if r.expires_at > now)

    async def delete_expired_records(self, now: datetime) -> int:
        async with self._lock:
            expired = [rid for rid, r in self._records.items() if r.expires_at < now]
            for rid in expired:
                del self._records[rid]
            return len(expired)

    async def insert_package(self, package: RecoveryPackage) -> None:
        async with self._lock:
            self._packages[package.export_id] = package

    async def get_package(self, export_id: str) -> Optional[RecoveryPackage]:
        async with self._lock:
            return self._packages.get(export_id)

    async def list_packages(self, owner_user_id: int, now: datetime) -> List[RecoveryPackage]:
        async with self._lock:
            rows = [
                p
                for p in self._packages.values()
                if p.owner_user_id == owner_user_id and p.expires_at > now
            ]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows

    async def mark_package_downloaded(self, export_id: str) -> bool:
        return await self._set_downloaded(export_id, expected=False)

    async def reset_package_downloaded(self, export_id: str) -> bool:
        return await self._set_downloaded(export_id, expected=True)

    async def _set_downloaded(self, export_id: str, expected: bool) -> bool:
        async with self._lock:
            package = self._packages.get(export_id)
            if package is None or package.downloaded != expected:
                return False
            self._packages[export_id] = replace(package, downloaded=not expected)
            return True

    async def count_active_packages(self, now: datetime) -> int:
        async with self._lock:
            return sum(1 for p in self._packages.values() if p.expires_at > now)

    async def delete_expired_packages(self, now: datetime) -> int:
        async with self._lock:
            expired = [eid for eid, p in self._packages.items() if p.expires_at < now]
            for eid in expired:
                del self._packages[eid]
            return len(expired)

    async def append_audit_log(
        self, user_id: Optional[int], action: str, created_at: datetime, metadata: Dict[str, Any]
    ) -> None:
        async with self._lock:
            self.audit_logs.append(
                LogRow(next(self._log_ids), user_id, action, created_at, dict(metadata))
            )

    async def append_recovery_log(
        self, user_id: Optional[int], scenario: str, created_at: datetime, metadata: Dict[str, Any]
    ) -> None:
        async with self._lock:
            self.recovery_logs.append(
                LogRow(next(self._log_ids), user_id, scenario, created_at, dict(metadata))
            )

    async def delete_audit_logs_before(self, cutoff: datetime) -> int:
        async with self._lock:
            before = len(self.audit_logs)
            self.audit_logs = [row for row in self.audit_logs if row.created_at >= cutoff]
            return before - len(self.audit_logs)

    async def delete_recovery_logs_before(self, cutoff: datetime) -> int:
        async with self._lock:
            before = len(self.recovery_logs)
            self.recovery_logs = [row for row in self.recovery_logs if row.created_at >= cutoff]
            return before - len(self.recovery_logs)

    async def record_cleanup_stats(self, stats: CleanupStats) -> None:
        async with self._lock:
            self.cleanup_stats.append(stats)

    async def compact(self) -> None:
        async with self._lock:
            self.compactions += 1
