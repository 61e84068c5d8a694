"""
Pytest configuration and fixtures for mail vault tests.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from argon2 import PasswordHasher
from dotenv import load_dotenv

from mail_vault import (
    EmailVault,
    InMemoryStorage,
    PostgresStorage,
    UserAccount,
    VaultConfig,
)

ALICE = 1
BOB = 2
ALICE_EMAIL = "alice@example.com"
BOB_EMAIL = "bob@example.com"
ALICE_PASSWORD = "correct-pw"
BOB_PASSWORD = "bob-pw"

# Cheap parameters; verification reads them back from the hash
_test_hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


class FakeClock:
    """Mutable UTC clock for driving expiry and schedules."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def hash_password(password: str) -> str:
    return _test_hasher.hash(password)


@pytest.fixture
def clock() -> FakeClock:
    # Saturday
    return FakeClock(datetime(2026, 1, 3, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config() -> VaultConfig:
    return VaultConfig(
        master_secret="test-master-secret",
        storage_salt="test-storage-salt",
        recovery_salt="test-recovery-salt",
        kdf_iterations=100_000,
    )


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    """Create an in-memory storage instance with two registered accounts."""
    storage = InMemoryStorage()
    storage.add_user(UserAccount(ALICE, ALICE_EMAIL, hash_password(ALICE_PASSWORD)))
    storage.add_user(UserAccount(BOB, BOB_EMAIL, hash_password(BOB_PASSWORD)))
    return storage


@pytest.fixture
def vault(memory_storage: InMemoryStorage, config: VaultConfig, clock: FakeClock) -> EmailVault:
    return EmailVault.new(memory_storage, config, clock=clock)


def sample_email(n: int = 1, **overrides):
    data = {
        "to": f"user{n}@example.com",
        "from": "notifications@wpma.io",
        "subject": f"Subject {n}",
        "body": f"Body of email {n}",
    }
    data.update(overrides)
    return data


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    # The platform owns ``users``; provide a minimal one for the foreign keys
    await pool.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id SERIAL PRIMARY KEY,
            email VARCHAR(255) NOT NULL,
            password_hash TEXT NOT NULL
        )
        """
    )
    await PostgresStorage(pool).create_schema()
    await pool.execute(
        "TRUNCATE TABLE user_email_salts, encrypted_emails, email_recovery_exports, "
        "email_audit_logs, email_recovery_logs, email_encryption_stats"
    )

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_storage(pg_pool: asyncpg.Pool) -> PostgresStorage:
    """Create a PostgreSQL storage instance for testing."""
    return PostgresStorage(pg_pool)
