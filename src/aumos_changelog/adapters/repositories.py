"""SQLAlchemy repositories for the audit changelog on PostgreSQL.

Each repository implements the corresponding interface from core/interfaces.py
and works on the session of one unit of work; none of them commits.

Repositories:
- SqlChangelogStore      - chg_changelog reads, appends and partition DDL
- SqlCaptureQueue        - chg_capture_queue with SKIP LOCKED claims
- SqlExclusionRegistry   - chg_excluded_fields
- SqlAlertStore          - chg_alert_rules / chg_alert_events

Primary-store side:
- SqlCaptureSink         - capture sink bound to the mutating session
- SqlPrimaryStore        - live row lookups for reconstruction

Partition and schema names are interpolated into DDL and are therefore
checked against a strict identifier pattern first.
"""

from __future__ import annotations

import itertools
import re
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aumos_changelog.core.models import (
    CHANGELOG_TABLE,
    DEFAULT_PARTITION_TABLE,
    AlertEventRecord,
    AlertRuleRecord,
    CaptureQueueItem,
    ChangelogEntry,
    ChangelogPartition,
    ExcludedField,
)
from aumos_changelog.core.records import (
    AlertEvent,
    AlertRule,
    ChangeRecord,
    ChangeSummaryRow,
    ExclusionRule,
    Operation,
    Partition,
    PendingChange,
    QueueEntry,
    to_utc,
)
from aumos_changelog.errors import ConflictError, NotFoundError, ValidationError
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

_GROUP_COLUMNS = {
    "actor_id": ChangelogEntry.actor_id,
    "tenant_id": ChangelogEntry.tenant_id,
    "entity": ChangelogEntry.entity,
    "operation": ChangelogEntry.operation,
}

_REPLAY_ORDER = (
    ChangelogEntry.captured_at,
    ChangelogEntry.transaction_id,
    ChangelogEntry.sequence,
    ChangelogEntry.id,
)


def checked_identifier(name: str) -> str:
    """Return ``name`` if it is a plain lower-case SQL identifier.

    Raises:
        ValidationError: Otherwise.
    """
    if not _IDENTIFIER.match(name):
        raise ValidationError(f"Invalid SQL identifier: {name!r}")
    return name


class SqlChangelogStore:
    """Changelog store on the range-partitioned chg_changelog table.

    Args:
        session: Session of the current unit of work.
        archive_schema: Schema that archived partitions are moved into.
    """

    def __init__(self, session: AsyncSession, archive_schema: str = "changelog_archive") -> None:
        self._session = session
        self._archive_schema = checked_identifier(archive_schema)

    async def append(self, changes: list[PendingChange]) -> list[ChangeRecord]:
        entries = [ChangelogEntry.from_change(change) for change in changes]
        if not entries:
            return []
        self._session.add_all(entries)
        await self._session.flush()
        return [entry.to_record() for entry in entries]

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
        stmt = select(ChangelogEntry).where(
            ChangelogEntry.entity == entity,
            ChangelogEntry.row_identity == row_identity,
        )
        if after is not None:
            stmt = stmt.where(ChangelogEntry.captured_at > to_utc(after))
        if before is not None:
            stmt = stmt.where(ChangelogEntry.captured_at < to_utc(before))
        if newest_first:
            stmt = stmt.order_by(*(column.desc() for column in _REPLAY_ORDER))
        else:
            stmt = stmt.order_by(*_REPLAY_ORDER)
        if limit is not None:
            stmt = stmt.limit(limit)

        result = await self._session.execute(stmt)
        return [entry.to_record() for entry in result.scalars().all()]

    async def _in_range(
        self, start: datetime, end: datetime, *criteria: Any, limit: int | None = None
    ) -> list[ChangeRecord]:
        stmt = (
            select(ChangelogEntry)
            .where(
                ChangelogEntry.captured_at >= to_utc(start),
                ChangelogEntry.captured_at < to_utc(end),
                *criteria,
            )
            .order_by(*(column.desc() for column in _REPLAY_ORDER))
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return [entry.to_record() for entry in result.scalars().all()]

    async def by_actor(
        self, actor_id: str, start: datetime, end: datetime, limit: int | None = None
    ) -> list[ChangeRecord]:
        return await self._in_range(start, end, ChangelogEntry.actor_id == actor_id, limit=limit)

    async def by_tenant(
        self, tenant_id: str, start: datetime, end: datetime, limit: int | None = None
    ) -> list[ChangeRecord]:
        return await self._in_range(start, end, ChangelogEntry.tenant_id == tenant_id, limit=limit)

    async def by_transaction(self, transaction_id: int) -> list[ChangeRecord]:
        stmt = (
            select(ChangelogEntry)
            .where(ChangelogEntry.transaction_id == transaction_id)
            .order_by(*_REPLAY_ORDER)
        )
        result = await self._session.execute(stmt)
        return [entry.to_record() for entry in result.scalars().all()]

    async def summarize(self, start: datetime, end: datetime) -> list[ChangeSummaryRow]:
        stmt = (
            select(ChangelogEntry.entity, ChangelogEntry.operation, func.count())
            .where(
                ChangelogEntry.captured_at >= to_utc(start),
                ChangelogEntry.captured_at < to_utc(end),
            )
            .group_by(ChangelogEntry.entity, ChangelogEntry.operation)
            .order_by(ChangelogEntry.entity, ChangelogEntry.operation)
        )
        result = await self._session.execute(stmt)
        return [
            ChangeSummaryRow(entity=entity, operation=operation, count=count)
            for entity, operation, count in result.all()
        ]

    async def aggregate(
        self,
        start: datetime,
        end: datetime,
        group_by: str | None = None,
        entity: str | None = None,
        operation: Operation | None = None,
    ) -> dict[str | None, int]:
        criteria = [
            ChangelogEntry.captured_at >= to_utc(start),
            ChangelogEntry.captured_at < to_utc(end),
        ]
        if entity is not None:
            criteria.append(ChangelogEntry.entity == entity)
        if operation is not None:
            criteria.append(ChangelogEntry.operation == operation)

        if group_by is None:
            result = await self._session.execute(select(func.count()).select_from(ChangelogEntry).where(*criteria))
            return {None: int(result.scalar_one())}

        column = _GROUP_COLUMNS.get(group_by)
        if column is None:
            raise ValidationError(f"Unsupported aggregate grouping: {group_by}")
        stmt = (
            select(column, func.count())
            .where(*criteria, column.is_not(None))
            .group_by(column)
        )
        result = await self._session.execute(stmt)
        return {key: int(count) for key, count in result.all()}

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    async def list_partitions(self) -> list[Partition]:
        stmt = select(ChangelogPartition).order_by(
            ChangelogPartition.is_default, ChangelogPartition.range_start
        )
        result = await self._session.execute(stmt)
        return [row.to_partition() for row in result.scalars().all()]

    async def create_partition(self, name: str, start: datetime, end: datetime) -> Partition:
        name = checked_identifier(name)
        start, end = to_utc(start), to_utc(end)
        if start >= end:
            raise ValidationError("Partition start must be before its end")

        # Serialises partition DDL across concurrent managers.
        await self._session.execute(text("SELECT pg_advisory_xact_lock(hashtext('chg_partitions'))"))

        existing = await self._session.get(ChangelogPartition, name)
        if existing is not None:
            if existing.range_start != start or existing.range_end != end:
                raise ValidationError(f"Partition {name} already exists with a different range")
            return existing.to_partition()

        overlap = await self._session.execute(
            select(ChangelogPartition.name)
            .where(
                ChangelogPartition.is_default.is_(False),
                ChangelogPartition.status == "open",
                ChangelogPartition.range_start < end,
                ChangelogPartition.range_end > start,
            )
            .limit(1)
        )
        other = overlap.scalar_one_or_none()
        if other is not None:
            raise ValidationError(f"Partition {name} overlaps {other}")

        await self._session.execute(
            text(f"CREATE TABLE {name} (LIKE {CHANGELOG_TABLE} INCLUDING DEFAULTS INCLUDING CONSTRAINTS)")
        )
        moved = await self._session.execute(
            text(
                f"WITH moved AS (DELETE FROM {DEFAULT_PARTITION_TABLE} "
                "WHERE captured_at >= :start AND captured_at < :end RETURNING *) "
                f"INSERT INTO {name} SELECT * FROM moved"
            ),
            {"start": start, "end": end},
        )
        await self._session.execute(
            text(
                f"ALTER TABLE {CHANGELOG_TABLE} ATTACH PARTITION {name} "
                f"FOR VALUES FROM ('{start.isoformat()}') TO ('{end.isoformat()}')"
            )
        )

        row = ChangelogPartition(name=name, range_start=start, range_end=end, status="open", is_default=False)
        self._session.add(row)
        await self._session.flush()

        if moved.rowcount:
            logger.info("Rows moved out of default partition", partition=name, rows=moved.rowcount)
        return row.to_partition()

    async def _retirable(self, name: str) -> ChangelogPartition | None:
        name = checked_identifier(name)
        row = await self._session.get(ChangelogPartition, name, with_for_update=True)
        if row is None:
            raise NotFoundError(resource="Partition", resource_id=name)
        if row.is_default:
            raise ValidationError("The default partition cannot be retired")
        if row.status != "open":
            return None
        return row

    async def _detach(self, name: str) -> int:
        result = await self._session.execute(text(f"SELECT count(*) FROM {name}"))
        rows = int(result.scalar_one())
        await self._session.execute(text(f"ALTER TABLE {CHANGELOG_TABLE} DETACH PARTITION {name}"))
        return rows

    async def archive_partition(self, name: str) -> int:
        row = await self._retirable(name)
        if row is None:
            return 0
        rows = await self._detach(row.name)
        await self._session.execute(text(f"ALTER TABLE {row.name} SET SCHEMA {self._archive_schema}"))
        row.status = "archived"
        row.retired_at = func.now()
        await self._session.flush()
        logger.info("Partition archived", partition=row.name, schema=self._archive_schema, rows=rows)
        return rows

    async def drop_partition(self, name: str) -> int:
        row = await self._retirable(name)
        if row is None:
            return 0
        rows = await self._detach(row.name)
        await self._session.execute(text(f"DROP TABLE {row.name}"))
        row.status = "dropped"
        row.retired_at = func.now()
        await self._session.flush()
        logger.info("Partition dropped", partition=row.name, rows=rows)
        return rows


class SqlCaptureQueue:
    """Capture queue on chg_capture_queue.

    Claims lock rows with FOR UPDATE SKIP LOCKED and stamp a lease, so a
    concurrent worker neither blocks on nor sees a claimed entry.

    Args:
        session: Session of the current unit of work.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(self, changes: list[PendingChange]) -> list[QueueEntry]:
        items = [
            CaptureQueueItem(
                entity=change.entity,
                row_identity=change.row_identity,
                payload=change.model_dump(mode="json"),
            )
            for change in changes
        ]
        if not items:
            return []
        self._session.add_all(items)
        await self._session.flush()
        return [
            QueueEntry(entry_id=item.id, change=change, enqueued_at=item.enqueued_at)
            for item, change in zip(items, changes)
        ]

    async def claim(
        self, worker_id: str, limit: int, lease: timedelta, now: datetime
    ) -> list[QueueEntry]:
        stmt = (
            select(CaptureQueueItem)
            .where(
                or_(
                    CaptureQueueItem.claimed_by.is_(None),
                    CaptureQueueItem.claim_expires_at <= now,
                )
            )
            .order_by(CaptureQueueItem.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        items = list(result.scalars().all())
        for item in items:
            item.claimed_by = worker_id
            item.claim_expires_at = now + lease
        await self._session.flush()
        return [
            QueueEntry(
                entry_id=item.id,
                change=PendingChange.model_validate(item.payload),
                enqueued_at=item.enqueued_at,
                claimed_by=item.claimed_by,
                claim_expires_at=item.claim_expires_at,
            )
            for item in items
        ]

    async def release(self, worker_id: str, entry_ids: list[int]) -> None:
        if not entry_ids:
            return
        await self._session.execute(
            update(CaptureQueueItem)
            .where(CaptureQueueItem.id.in_(entry_ids), CaptureQueueItem.claimed_by == worker_id)
            .values(claimed_by=None, claim_expires_at=None)
            .execution_options(synchronize_session=False)
        )

    async def promote(
        self, worker_id: str, entries: list[QueueEntry], now: datetime
    ) -> list[ChangeRecord]:
        if not entries:
            return []
        stmt = (
            delete(CaptureQueueItem)
            .where(
                CaptureQueueItem.id.in_([entry.entry_id for entry in entries]),
                CaptureQueueItem.claimed_by == worker_id,
                CaptureQueueItem.claim_expires_at > now,
            )
            .returning(CaptureQueueItem.id, CaptureQueueItem.payload)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        owned = sorted(result.all(), key=lambda row: row[0])
        if len(owned) < len(entries):
            logger.warning(
                "Claims lost before promotion",
                worker_id=worker_id,
                lost=len(entries) - len(owned),
            )
        changes = [PendingChange.model_validate(payload) for _, payload in owned]
        return await SqlChangelogStore(self._session).append(changes)

    async def pending(self, entity: str, row_identity: str) -> list[PendingChange]:
        stmt = (
            select(CaptureQueueItem.payload)
            .where(CaptureQueueItem.entity == entity, CaptureQueueItem.row_identity == row_identity)
            .order_by(CaptureQueueItem.id)
        )
        result = await self._session.execute(stmt)
        return [PendingChange.model_validate(payload) for payload in result.scalars().all()]

    async def depth(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(CaptureQueueItem))
        return int(result.scalar_one())


class SqlExclusionRegistry:
    """Exclusion rules on chg_excluded_fields.

    Args:
        session: Session of the current unit of work.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def excluded_fields(self, entity: str) -> frozenset[str]:
        result = await self._session.execute(
            select(ExcludedField.field).where(ExcludedField.entity == entity)
        )
        return frozenset(result.scalars().all())

    async def add(self, rule: ExclusionRule) -> ExclusionRule:
        await self._session.execute(
            insert(ExcludedField)
            .values(
                entity=rule.entity,
                field=rule.field,
                reason=rule.reason,
                excluded_by=rule.excluded_by,
                excluded_at=rule.excluded_at,
            )
            .on_conflict_do_nothing(index_elements=["entity", "field"])
        )
        stored = await self._session.get(ExcludedField, (rule.entity, rule.field), populate_existing=True)
        return stored.to_rule() if stored is not None else rule

    async def remove(self, entity: str, field: str) -> bool:
        result = await self._session.execute(
            delete(ExcludedField)
            .where(ExcludedField.entity == entity, ExcludedField.field == field)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def list_rules(self, entity: str | None = None) -> list[ExclusionRule]:
        stmt = select(ExcludedField).order_by(ExcludedField.entity, ExcludedField.field)
        if entity is not None:
            stmt = stmt.where(ExcludedField.entity == entity)
        result = await self._session.execute(stmt)
        return [row.to_rule() for row in result.scalars().all()]


class SqlAlertStore:
    """Alert rules and events on chg_alert_rules / chg_alert_events.

    ``record_firing`` locks the rule row before checking the cooldown, so
    concurrent evaluators of the same rule are serialised.

    Args:
        session: Session of the current unit of work.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_rule(self, rule: AlertRule) -> AlertRule:
        if await self._session.get(AlertRuleRecord, rule.name) is not None:
            raise ConflictError(f"Alert rule {rule.name!r} already exists")
        self._session.add(AlertRuleRecord.from_rule(rule))
        await self._session.flush()
        return rule

    async def _get_record(self, name: str, for_update: bool = False) -> AlertRuleRecord:
        record = await self._session.get(
            AlertRuleRecord, name, with_for_update=for_update, populate_existing=for_update
        )
        if record is None:
            raise NotFoundError(resource="AlertRule", resource_id=name)
        return record

    async def get_rule(self, name: str) -> AlertRule:
        return (await self._get_record(name)).to_rule()

    async def list_rules(self, enabled_only: bool = False) -> list[AlertRule]:
        stmt = select(AlertRuleRecord).order_by(AlertRuleRecord.name)
        if enabled_only:
            stmt = stmt.where(AlertRuleRecord.enabled.is_(True))
        result = await self._session.execute(stmt)
        return [record.to_rule() for record in result.scalars().all()]

    async def set_enabled(self, name: str, enabled: bool) -> AlertRule:
        record = await self._get_record(name, for_update=True)
        record.enabled = enabled
        await self._session.flush()
        return record.to_rule()

    async def record_firing(
        self, rule: AlertRule, fired_at: datetime, observed_value: float
    ) -> AlertEvent | None:
        fired_at = to_utc(fired_at)
        await self._get_record(rule.name, for_update=True)

        result = await self._session.execute(
            select(func.max(AlertEventRecord.fired_at)).where(AlertEventRecord.rule_name == rule.name)
        )
        last = result.scalar_one_or_none()
        if last is not None and abs(fired_at - last) < rule.cooldown:
            return None

        event = AlertEvent(
            rule_name=rule.name,
            fired_at=fired_at,
            observed_value=observed_value,
            threshold=rule.threshold,
            severity=rule.severity,
        )
        self._session.add(AlertEventRecord.from_event(event))
        await self._session.flush()
        return event

    async def list_events(
        self,
        start: datetime,
        end: datetime,
        rule_name: str | None = None,
        active_only: bool = False,
    ) -> list[AlertEvent]:
        stmt = select(AlertEventRecord).where(
            AlertEventRecord.fired_at >= to_utc(start),
            AlertEventRecord.fired_at < to_utc(end),
        )
        if rule_name is not None:
            stmt = stmt.where(AlertEventRecord.rule_name == rule_name)
        if active_only:
            stmt = stmt.where(AlertEventRecord.acknowledged_at.is_(None))
        stmt = stmt.order_by(AlertEventRecord.fired_at.desc())
        result = await self._session.execute(stmt)
        return [record.to_event() for record in result.scalars().all()]

    async def acknowledge(self, event_id: str, actor_id: str, at: datetime) -> AlertEvent:
        record = await self._session.get(AlertEventRecord, event_id, with_for_update=True)
        if record is None:
            raise NotFoundError(resource="AlertEvent", resource_id=event_id)
        if record.acknowledged_at is None:
            record.acknowledged_at = to_utc(at)
            record.acknowledged_by = actor_id
            await self._session.flush()
        return record.to_event()


class SqlCaptureSink:
    """Capture sink bound to the session performing a tracked mutation.

    Audit rows are written through the same session, so they commit or roll
    back with the mutation. Each write runs in a SAVEPOINT so that a failed
    capture in lenient mode leaves the mutation's transaction usable.
    The session role (``current_user``) is recorded as ``changed_by``.

    Create one per transaction with ``await SqlCaptureSink.create(session)``.
    """

    def __init__(
        self, session: AsyncSession, transaction_id: int, captured_at: datetime, principal: str
    ) -> None:
        self._session = session
        self._transaction_id = transaction_id
        self._captured_at = to_utc(captured_at)
        self._principal = principal
        self._sequence = itertools.count()

    @classmethod
    async def create(cls, session: AsyncSession) -> SqlCaptureSink:
        result = await session.execute(text("SELECT txid_current(), transaction_timestamp(), current_user"))
        transaction_id, captured_at, principal = result.one()
        return cls(session, int(transaction_id), captured_at, principal)

    @property
    def transaction_id(self) -> int:
        return self._transaction_id

    @property
    def captured_at(self) -> datetime:
        return self._captured_at

    @property
    def principal(self) -> str:
        return self._principal

    def next_sequence(self) -> int:
        return next(self._sequence)

    async def excluded_fields(self, entity: str) -> frozenset[str]:
        return await SqlExclusionRegistry(self._session).excluded_fields(entity)

    async def write_change(self, change: PendingChange) -> None:
        async with self._session.begin_nested():
            await SqlChangelogStore(self._session).append([change])

    async def enqueue_change(self, change: PendingChange) -> None:
        async with self._session.begin_nested():
            await SqlCaptureQueue(self._session).enqueue([change])


class SqlPrimaryStore:
    """Reads live rows of tracked tables for reconstruction.

    Args:
        session_factory: Factory for sessions on the primary database.
        key_columns: Key column of tables whose key is not ``default_key_column``.
        default_key_column: Key column of every other table.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        key_columns: Mapping[str, str] | None = None,
        default_key_column: str = "id",
    ) -> None:
        self._session_factory = session_factory
        self._key_columns = dict(key_columns or {})
        self._default_key_column = default_key_column

    async def fetch_current(self, entity: str, row_identity: str) -> dict[str, Any] | None:
        table = checked_identifier(entity)
        key_column = checked_identifier(self._key_columns.get(entity, self._default_key_column))

        stmt = text(
            f"SELECT to_jsonb(t) AS snapshot FROM {table} AS t WHERE t.{key_column}::text = :row_identity"
        ).columns(snapshot=JSONB)
        async with self._session_factory() as session:
            result = await session.execute(stmt, {"row_identity": row_identity})
            snapshot = result.scalar_one_or_none()
        return dict(snapshot) if snapshot is not None else None
