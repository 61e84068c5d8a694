"""
Retention sweeps for expired ciphertext and old operation logs.

This module provides:
- RetentionSweeper: daily and weekly purge passes
- SweepReport: per-step counts and failures of one pass
- Cadence / CronTicker: schedule ticks (daily 02:00 UTC, weekly Sunday 03:00 UTC)
- RetentionScheduler: drives the sweeper from any async ticker

Each sweep step is independent: a failing step is recorded in the report and
the remaining steps still run. Sweeps never raise.

Deleting rows that are already expired is safe next to concurrent reads,
because every read filters expired rows by predicate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .models import CleanupStats, utcnow
from .store import Clock, EncryptedEmailStore, retry_on_timeout

logger = logging.getLogger(__name__)

AUDIT_LOG_RETENTION = timedelta(days=365)
RECOVERY_LOG_RETENTION = timedelta(days=182)


class Cadence(Enum):
    """Which sweep a tick asks for."""

    DAILY = "daily"
    WEEKLY = "weekly"

    def __str__(self) -> str:
        return self.value


@dataclass
class SweepReport:
    """Outcome of one sweep pass."""

    cadence: Cadence
    started_at: datetime
    counts: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class RetentionSweeper:
    """Purges expired emails, recovery packages and stale log rows."""

    def __init__(
        self,
        store: EncryptedEmailStore,
        clock: Clock = utcnow,
        audit_retention: timedelta = AUDIT_LOG_RETENTION,
        recovery_log_retention: timedelta = RECOVERY_LOG_RETENTION,
    ) -> None:
        self._store = store
        self._storage = store.storage
        self._clock = clock
        self._audit_retention = audit_retention
        self._recovery_log_retention = recovery_log_retention

    async def run(self, cadence: Cadence) -> SweepReport:
        if cadence is Cadence.DAILY:
            return await self.run_daily()
        return await self.run_weekly()

    async def run_daily(self) -> SweepReport:
        """Purge expired emails and packages, then record cleanup statistics."""
        now = self._clock()
        report = SweepReport(Cadence.DAILY, now)
        logger.info("Starting daily email cleanup")

        # The store retries its own timeouts
        await self._step(report, "emails", lambda: self._store.purge_expired(now), retry=False)
        await self._step(report, "exports", lambda: self._storage.delete_expired_packages(now))
        await self._step(report, "stats", lambda: self._record_stats(report, now))

        logger.info(
            "Daily cleanup completed: %d emails, %d exports deleted",
            report.counts.get("emails", 0),
            report.counts.get("exports", 0),
        )
        return report

    async def run_weekly(self) -> SweepReport:
        """Purge old audit and recovery logs, then compact storage."""
        now = self._clock()
        report = SweepReport(Cadence.WEEKLY, now)
        logger.info("Starting weekly deep cleanup")

        await self._step(
            report,
            "audit_logs",
            lambda: self._storage.delete_audit_logs_before(now - self._audit_retention),
        )
        await self._step(
            report,
            "recovery_logs",
            lambda: self._storage.delete_recovery_logs_before(now - self._recovery_log_retention),
        )
        await self._step(report, "compact", self._compact)

        logger.info(
            "Weekly cleanup completed: %d audit logs, %d recovery logs",
            report.counts.get("audit_logs", 0),
            report.counts.get("recovery_logs", 0),
        )
        return report

    async def _step(
        self,
        report: SweepReport,
        name: str,
        operation: Callable[[], Awaitable[int]],
        retry: bool = True,
    ) -> None:
        try:
            if retry:
                report.counts[name] = await retry_on_timeout(operation, f"sweep {name}")
            else:
                report.counts[name] = await operation()
        except Exception as e:
            report.failures[name] = f"{type(e).__name__}: {e}"
            logger.error("Cleanup step '%s' failed: %s", name, e)

    async def _record_stats(self, report: SweepReport, now: datetime) -> int:
        stats = CleanupStats(
            cleanup_date=now,
            emails_deleted=report.counts.get("emails", 0),
            exports_deleted=report.counts.get("exports", 0),
            total_emails=await self._storage.count_active_records(now),
            total_exports=await self._storage.count_active_packages(now),
        )
        await self._storage.record_cleanup_stats(stats)
        return 1

    async def _compact(self) -> int:
        await self._storage.compact()
        return 1


# =============================================================================
# Scheduling
# =============================================================================


def _next_daily(after: datetime, at: time) -> datetime:
    candidate = after.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= after:
        candidate += timedelta(days=1)
    return candidate


def _next_weekly(after: datetime, at: time, weekday: int) -> datetime:
    candidate = after.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    candidate += timedelta(days=(weekday - after.weekday()) % 7)
    if candidate <= after:
        candidate += timedelta(days=7)
    return candidate


class CronTicker:
    """
    Async iterator of Cadence ticks on a fixed wall-clock schedule.

    ``clock`` and ``sleep`` are injectable so the schedule can be driven
    without real waiting.
    """

    def __init__(
        self,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        daily_at: time = time(2, 0),
        weekly_at: time = time(3, 0),
        weekly_day: int = 6,  # Sunday
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._daily_at = daily_at
        self._weekly_at = weekly_at
        self._weekly_day = weekly_day
        self._last_fire: Optional[datetime] = None

    def __aiter__(self) -> CronTicker:
        return self

    async def __anext__(self) -> Cadence:
        now = self._clock()
        # Never fire the same slot twice, even if the clock lags the sleep
        after = max(now, self._last_fire) if self._last_fire else now
        daily = _next_daily(after, self._daily_at)
        weekly = _next_weekly(after, self._weekly_at, self._weekly_day)
        cadence, when = (Cadence.WEEKLY, weekly) if weekly < daily else (Cadence.DAILY, daily)

        await self._sleep(max((when - now).total_seconds(), 0.0))
        self._last_fire = when
        return cadence


class RetentionScheduler:
    """Runs sweeps for every tick from an async ticker."""

    def __init__(
        self,
        sweeper: RetentionSweeper,
        on_report: Optional[Callable[[SweepReport], None]] = None,
    ) -> None:
        self._sweeper = sweeper
        self._on_report = on_report

    async def run(self, ticker: AsyncIterator[Cadence]) -> List[SweepReport]:
        """Consume ticks until the ticker is exhausted; returns every report."""
        reports = []
        async for cadence in ticker:
            report = await self._sweeper.run(cadence)
            if not report.ok:
                logger.error(
                    "%s cleanup finished with failures: %s",
                    cadence.value.capitalize(),
                    ", ".join(sorted(report.failures)),
                )
            if self._on_report is not None:
                self._on_report(report)
            reports.append(report)
        return reports
