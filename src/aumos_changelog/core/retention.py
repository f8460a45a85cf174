"""Partition maintenance and retention for the changelog.

The manager keeps partitions for the current period and ``partitions_ahead``
future periods in place (creation is idempotent), and moves every partition
that ended before the retention horizon to the cold namespace, or drops it.
A partition whose archive or drop keeps failing is retained untouched and
reported; it is retried on the next cycle.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from aumos_changelog.core.interfaces import IAuditBackend
from aumos_changelog.core.records import Partition, to_utc, utc_now
from aumos_changelog.errors import RetentionError
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

PartitionPeriod = Literal["day", "month"]
RetentionAction = Literal["archive", "drop"]

PARTITION_PREFIX = "chg_changelog_p"


def period_bounds(ts: datetime, period: PartitionPeriod) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` bounds of the period containing ``ts``."""
    ts = to_utc(ts)
    if period == "day":
        start = datetime(ts.year, ts.month, ts.day, tzinfo=timezone.utc)
        return start, start + timedelta(days=1)

    start = datetime(ts.year, ts.month, 1, tzinfo=timezone.utc)
    if ts.month == 12:
        end = datetime(ts.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(ts.year, ts.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def partition_name(start: datetime, period: PartitionPeriod) -> str:
    """Name of the partition starting at ``start``, e.g. ``chg_changelog_p2026_10``."""
    if period == "day":
        return f"{PARTITION_PREFIX}{start:%Y_%m_%d}"
    return f"{PARTITION_PREFIX}{start:%Y_%m}"


@dataclass
class RetentionReport:
    """Outcome of one retention pass."""

    older_than: datetime
    archived: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    rows_moved: int = 0
    failed: list[RetentionError] = field(default_factory=list)


class PartitionManager:
    """Creates future partitions and retires expired ones.

    Args:
        backend: Audit backend owning the changelog partitions.
        period: Width of each partition.
        partitions_ahead: Future partitions kept ready beyond the current one.
        retention: Age after which a partition is retired.
        action: ``archive`` relocates to the cold namespace; ``drop`` deletes.
        max_attempts: Attempts per partition within one pass.
        retry_delay_seconds: Pause between attempts.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        backend: IAuditBackend,
        period: PartitionPeriod = "month",
        partitions_ahead: int = 2,
        retention: timedelta = timedelta(days=365),
        action: RetentionAction = "archive",
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._backend = backend
        self._period = period
        self._ahead = partitions_ahead
        self._retention = retention
        self._action = action
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._clock = clock

    async def create_partition(self, period_start: datetime) -> Partition:
        """Create the partition for the period containing ``period_start``."""
        start, end = period_bounds(period_start, self._period)
        name = partition_name(start, self._period)
        async with self._backend.unit_of_work() as uow:
            partition = await uow.changes.create_partition(name, start, end)
        logger.info(
            "Partition ensured",
            partition=name,
            range_start=start.isoformat(),
            range_end=end.isoformat(),
        )
        return partition

    async def ensure_partitions(self, now: datetime | None = None) -> list[Partition]:
        """Ensure the current period and the configured future periods exist."""
        now = to_utc(now) if now is not None else self._clock()
        start, _ = period_bounds(now, self._period)
        partitions = []
        for _ in range(self._ahead + 1):
            partition = await self.create_partition(start)
            partitions.append(partition)
            start = partition.range_end  # type: ignore[assignment]
        return partitions

    async def archive_partitions(self, older_than: datetime) -> RetentionReport:
        """Retire every open ranged partition that ended at or before ``older_than``."""
        older_than = to_utc(older_than)
        report = RetentionReport(older_than=older_than)

        async with self._backend.unit_of_work() as uow:
            partitions = await uow.changes.list_partitions()

        expired = [
            p
            for p in partitions
            if not p.is_default
            and p.status == "open"
            and p.range_end is not None
            and p.range_end <= older_than
        ]

        for partition in expired:
            try:
                rows = await self._retire(partition.name)
            except RetentionError as exc:
                report.failed.append(exc)
                logger.error(
                    "Partition retained after retention failure",
                    partition=partition.name,
                    attempts=exc.attempts,
                    error=str(exc),
                )
                continue
            report.rows_moved += rows
            if self._action == "archive":
                report.archived.append(partition.name)
            else:
                report.dropped.append(partition.name)

        if expired:
            logger.info(
                "Retention pass complete",
                older_than=older_than.isoformat(),
                archived=report.archived,
                dropped=report.dropped,
                failed=[error.partition for error in report.failed],
                rows_moved=report.rows_moved,
            )
        return report

    async def run_once(self, now: datetime | None = None) -> RetentionReport:
        """Ensure upcoming partitions, then retire expired ones."""
        now = to_utc(now) if now is not None else self._clock()
        await self.ensure_partitions(now)
        return await self.archive_partitions(now - self._retention)

    async def _retire(self, name: str) -> int:
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._backend.unit_of_work() as uow:
                    if self._action == "archive":
                        return await uow.changes.archive_partition(name)
                    return await uow.changes.drop_partition(name)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Partition retention attempt failed",
                    partition=name,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(exc),
                )
                if attempt < self._max_attempts and self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay)
        raise RetentionError(name, self._max_attempts, str(last_error))
