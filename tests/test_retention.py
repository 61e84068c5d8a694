"""
Tests for retention sweeps and their schedule.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import ALICE, FakeClock
from mail_vault import (
    Cadence,
    CronTicker,
    EmailContext,
    EncryptedEmailStore,
    EncryptedPayload,
    InMemoryStorage,
    RecoveryPackage,
    RetentionScheduler,
    RetentionSweeper,
    StorageError,
    StoreTimeoutError,
)

PAYLOAD = EncryptedPayload(ciphertext=b"c", nonce=b"\x00" * 16, auth_tag=b"\x00" * 16)


def _sweeper(storage, clock):
    return RetentionSweeper(EncryptedEmailStore(storage, clock=clock), clock=clock)


async def _record(storage, now, expires_in):
    return await storage.insert_record(ALICE, EmailContext.GENERAL, PAYLOAD, now, now + expires_in)


async def _package(storage, now, export_id, expires_in):
    await storage.insert_package(
        RecoveryPackage(
            export_id=export_id,
            owner_user_id=ALICE,
            ciphertext=b"c",
            nonce=b"\x00" * 16,
            auth_tag=b"\x00" * 16,
            created_at=now,
            expires_at=now + expires_in,
        )
    )


class BrokenEmailTable(InMemoryStorage):
    async def delete_expired_records(self, now):
        raise StorageError("relation encrypted_emails is locked")


class SlowEmailTable(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def delete_expired_records(self, now):
        self.attempts += 1
        if self.attempts == 1:
            raise StoreTimeoutError()
        return await super().delete_expired_records(now)


class SlowExportTable(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def delete_expired_packages(self, now):
        self.attempts += 1
        if self.attempts == 1:
            raise StoreTimeoutError()
        return await super().delete_expired_packages(now)


class TestDailySweep:
    async def test_purges_only_expired_rows(self, memory_storage, clock):
        now = clock()
        await _record(memory_storage, now, timedelta(seconds=-1))
        kept = await _record(memory_storage, now, timedelta(hours=1))
        await _package(memory_storage, now, "old", timedelta(seconds=-1))
        await _package(memory_storage, now, "fresh", timedelta(days=7))

        report = await _sweeper(memory_storage, clock).run_daily()

        assert report.ok
        assert report.cadence is Cadence.DAILY
        assert report.counts["emails"] == 1
        assert report.counts["exports"] == 1
        assert [r.id for r in await memory_storage.list_records(ALICE, now)] == [kept]
        assert await memory_storage.get_package("old") is None
        assert await memory_storage.get_package("fresh") is not None

    async def test_records_cleanup_stats(self, memory_storage, clock):
        now = clock()
        await _record(memory_storage, now, timedelta(seconds=-1))
        await _record(memory_storage, now, timedelta(days=30))
        await _package(memory_storage, now, "fresh", timedelta(days=7))

        await _sweeper(memory_storage, clock).run_daily()

        (stats,) = memory_storage.cleanup_stats
        assert stats.cleanup_date == now
        assert stats.emails_deleted == 1
        assert stats.exports_deleted == 0
        assert stats.total_emails == 1
        assert stats.total_exports == 1

    async def test_failing_step_does_not_stop_the_others(self, clock):
        storage = BrokenEmailTable()
        await _package(storage, clock(), "old", timedelta(seconds=-1))

        report = await _sweeper(storage, clock).run_daily()

        assert not report.ok
        assert set(report.failures) == {"emails"}
        assert report.counts["exports"] == 1
        assert storage.cleanup_stats[0].emails_deleted == 0

    async def test_timeout_is_retried(self, clock):
        storage = SlowExportTable()
        await _package(storage, clock(), "old", timedelta(seconds=-1))

        report = await _sweeper(storage, clock).run(Cadence.DAILY)

        assert report.ok
        assert report.counts["exports"] == 1
        assert storage.attempts == 2

    async def test_email_purge_retries_once_through_the_store(self, clock):
        storage = SlowEmailTable()
        await _record(storage, clock(), timedelta(seconds=-1))

        report = await _sweeper(storage, clock).run_daily()

        assert report.ok
        assert report.counts["emails"] == 1
        assert storage.attempts == 2


class TestWeeklySweep:
    async def test_purges_old_logs_and_compacts(self, memory_storage, clock):
        now = clock()
        await memory_storage.append_audit_log(ALICE, "encrypt", now - timedelta(days=400), {})
        await memory_storage.append_audit_log(ALICE, "encrypt", now - timedelta(days=10), {})
        await memory_storage.append_recovery_log(ALICE, "export", now - timedelta(days=200), {})
        await memory_storage.append_recovery_log(ALICE, "import", now - timedelta(days=100), {})

        report = await _sweeper(memory_storage, clock).run(Cadence.WEEKLY)

        assert report.ok
        assert report.counts == {"audit_logs": 1, "recovery_logs": 1, "compact": 1}
        assert [row.kind for row in memory_storage.recovery_logs] == ["import"]
        assert len(memory_storage.audit_logs) == 1
        assert memory_storage.compactions == 1


class TestCronTicker:
    async def test_daily_then_weekly_schedule(self, clock):
        assert clock().weekday() == 5  # Saturday
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)
            clock.advance(seconds=seconds)

        ticker = CronTicker(clock=clock, sleep=sleep)
        ticks = [await ticker.__anext__() for _ in range(3)]

        assert ticks == [Cadence.DAILY, Cadence.WEEKLY, Cadence.DAILY]
        assert sleeps == [14 * 3600, 3600, 23 * 3600]
        assert clock() == datetime(2026, 1, 5, 2, 0, tzinfo=timezone.utc)

    async def test_lagging_clock_never_refires_a_slot(self):
        clock = FakeClock(datetime(2026, 1, 3, 12, 0, tzinfo=timezone.utc))

        async def sleep(seconds):
            pass

        ticker = CronTicker(clock=clock, sleep=sleep)
        first = await ticker.__anext__()
        second = await ticker.__anext__()

        assert (first, second) == (Cadence.DAILY, Cadence.WEEKLY)


class TestRetentionScheduler:
    async def test_runs_a_sweep_per_tick(self, memory_storage, clock):
        async def ticks():
            yield Cadence.DAILY
            yield Cadence.WEEKLY

        seen = []
        scheduler = RetentionScheduler(_sweeper(memory_storage, clock), on_report=seen.append)
        reports = await scheduler.run(ticks())

        assert [r.cadence for r in reports] == [Cadence.DAILY, Cadence.WEEKLY]
        assert seen == reports
        assert len(memory_storage.cleanup_stats) == 1
        assert memory_storage.compactions == 1
