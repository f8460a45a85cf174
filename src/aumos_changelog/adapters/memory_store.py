"""Append-only, time-partitioned in-memory changelog store.

Records live in per-partition lists. Each partition covers a contiguous
``[range_start, range_end)`` slice of captured_at; anything outside every
open ranged partition lands in the default partition, which always exists.
Time-bounded queries only scan partitions overlapping the requested range.

All mutations are serialised by one ``threading.Lock`` and are all-or-nothing:
a batch is fully validated before any record is stored, and an archive write
must succeed before a partition's rows are removed from the hot store.

Production deployments use the PostgreSQL adapter in
``adapters/repositories.py``; this implementation keeps tests hermetic and
serves single-process deployments.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime

from aumos_changelog.core.interfaces import IArchiveSink
from aumos_changelog.core.records import (
    ChangeRecord,
    ChangeSummaryRow,
    Operation,
    Partition,
    PendingChange,
    to_utc,
)
from aumos_changelog.errors import NotFoundError, ValidationError
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

DEFAULT_PARTITION = "chg_changelog_default"

_GROUP_COLUMNS = ("actor_id", "tenant_id", "entity", "operation")


def _sort_key(record: ChangeRecord) -> tuple[datetime, int, int, int]:
    return (*record.ordering_key, record.id)


class InMemoryChangelogStore:
    """Partitioned changelog held in process memory.

    Args:
        archive: Cold namespace receiving archived partitions. Without one,
            archive_partition raises and retention must use ``drop``.
    """

    def __init__(self, archive: IArchiveSink | None = None) -> None:
        self._lock = threading.Lock()
        self._archive = archive
        self._next_id = 1
        self._partitions: dict[str, Partition] = {
            DEFAULT_PARTITION: Partition(name=DEFAULT_PARTITION, is_default=True),
        }
        self._rows: dict[str, list[ChangeRecord]] = {DEFAULT_PARTITION: []}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_batch(self, changes: Iterable[PendingChange]) -> list[ChangeRecord]:
        """Assign ids and store a batch atomically. Safe to call under other locks."""
        with self._lock:
            records = [
                ChangeRecord.from_pending(change, self._next_id + offset)
                for offset, change in enumerate(changes)
            ]
            for record in records:
                self._rows[self._route(record.captured_at)].append(record)
            self._next_id += len(records)
        return records

    async def append(self, changes: list[PendingChange]) -> list[ChangeRecord]:
        return self.insert_batch(changes)

    def _route(self, captured_at: datetime) -> str:
        for partition in self._partitions.values():
            if partition.status == "open" and partition.contains(captured_at):
                return partition.name
        return DEFAULT_PARTITION

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _scan(
        self,
        start: datetime | None,
        end: datetime | None,
        predicate: Callable[[ChangeRecord], bool],
    ) -> list[ChangeRecord]:
        with self._lock:
            candidates = [
                record
                for name, partition in self._partitions.items()
                if partition.status == "open" and partition.overlaps(start, end)
                for record in self._rows[name]
            ]
        return sorted((record for record in candidates if predicate(record)), key=_sort_key)

    async def history(
        self,
        entity: str,
        row_identity: str,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[ChangeRecord]:
        after = to_utc(after) if after is not None else None
        before = to_utc(before) if before is not None else None

        def matches(record: ChangeRecord) -> bool:
            return (
                record.entity == entity
                and record.row_identity == row_identity
                and (after is None or record.captured_at > after)
                and (before is None or record.captured_at < before)
            )

        records = self._scan(after, before, matches)
        if newest_first:
            records.reverse()
        return records[:limit] if limit is not None else records

    async def _in_range(
        self,
        start: datetime,
        end: datetime,
        predicate: Callable[[ChangeRecord], bool],
        limit: int | None,
    ) -> list[ChangeRecord]:
        start, end = to_utc(start), to_utc(end)
        records = self._scan(
            start, end, lambda record: start <= record.captured_at < end and predicate(record)
        )
        records.reverse()
        return records[:limit] if limit is not None else records

    async def by_actor(
        self, actor_id: str, start: datetime, end: datetime, limit: int | None = None
    ) -> list[ChangeRecord]:
        return await self._in_range(start, end, lambda record: record.actor_id == actor_id, limit)

    async def by_tenant(
        self, tenant_id: str, start: datetime, end: datetime, limit: int | None = None
    ) -> list[ChangeRecord]:
        return await self._in_range(start, end, lambda record: record.tenant_id == tenant_id, limit)

    async def by_transaction(self, transaction_id: int) -> list[ChangeRecord]:
        return self._scan(None, None, lambda record: record.transaction_id == transaction_id)

    async def summarize(self, start: datetime, end: datetime) -> list[ChangeSummaryRow]:
        records = await self._in_range(start, end, lambda record: True, None)
        counts = Counter((record.entity, record.operation) for record in records)
        return [
            ChangeSummaryRow(entity=entity, operation=operation, count=count)
            for (entity, operation), count in sorted(counts.items())
        ]

    async def aggregate(
        self,
        start: datetime,
        end: datetime,
        group_by: str | None = None,
        entity: str | None = None,
        operation: Operation | None = None,
    ) -> dict[str | None, int]:
        if group_by is not None and group_by not in _GROUP_COLUMNS:
            raise ValidationError(f"Unsupported aggregate grouping: {group_by}")

        records = await self._in_range(
            start,
            end,
            lambda record: (entity is None or record.entity == entity)
            and (operation is None or record.operation == operation),
            None,
        )
        if group_by is None:
            return {None: len(records)}

        counts: Counter[str | None] = Counter()
        for record in records:
            key = getattr(record, group_by)
            if key is not None:
                counts[key] += 1
        return dict(counts)

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    async def list_partitions(self) -> list[Partition]:
        with self._lock:
            ranged = sorted(
                (p for p in self._partitions.values() if not p.is_default),
                key=lambda p: p.range_start,  # type: ignore[arg-type, return-value]
            )
            return [*ranged, self._partitions[DEFAULT_PARTITION]]

    async def create_partition(self, name: str, start: datetime, end: datetime) -> Partition:
        start, end = to_utc(start), to_utc(end)
        if start >= end:
            raise ValidationError("Partition start must be before its end")

        with self._lock:
            existing = self._partitions.get(name)
            if existing is not None:
                if existing.range_start != start or existing.range_end != end:
                    raise ValidationError(f"Partition {name} already exists with a different range")
                return existing

            for other in self._partitions.values():
                if other.is_default or other.status != "open":
                    continue
                if other.range_start < end and start < other.range_end:  # type: ignore[operator]
                    raise ValidationError(f"Partition {name} overlaps {other.name}")

            partition = Partition(name=name, range_start=start, range_end=end)
            default_rows = self._rows[DEFAULT_PARTITION]
            moved = [record for record in default_rows if partition.contains(record.captured_at)]
            self._rows[DEFAULT_PARTITION] = [
                record for record in default_rows if not partition.contains(record.captured_at)
            ]
            self._partitions[name] = partition
            self._rows[name] = moved

        if moved:
            logger.info("Rows moved out of default partition", partition=name, rows=len(moved))
        return partition

    def _retirable(self, name: str) -> Partition | None:
        partition = self._partitions.get(name)
        if partition is None:
            raise NotFoundError(resource="Partition", resource_id=name)
        if partition.is_default:
            raise ValidationError("The default partition cannot be retired")
        if partition.status != "open":
            return None
        return partition

    async def archive_partition(self, name: str) -> int:
        if self._archive is None:
            raise ValidationError("No archive sink is configured")

        with self._lock:
            partition = self._retirable(name)
            if partition is None:
                return 0
            rows = self._rows[name]
            self._archive.write(name, list(rows))
            self._rows[name] = []
            self._partitions[name] = partition.model_copy(update={"status": "archived"})

        logger.info("Partition archived", partition=name, rows=len(rows))
        return len(rows)

    async def drop_partition(self, name: str) -> int:
        with self._lock:
            partition = self._retirable(name)
            if partition is None:
                return 0
            rows = self._rows[name]
            self._rows[name] = []
            self._partitions[name] = partition.model_copy(update={"status": "dropped"})

        logger.info("Partition dropped", partition=name, rows=len(rows))
        return len(rows)
