"""Abstract interfaces (Protocol classes) for the audit changelog.

Defines the contracts between the core engines and the adapter layer using
Python's typing.Protocol. Engines depend on these protocols, never on the
in-memory or SQLAlchemy adapters, so both backends are interchangeable.

Protocols defined:
- IContextProvider      - external source of actor/tenant/request identity
- IPrimaryStore         - external source of the live row state
- ICaptureSink          - transaction-scoped writer used by the interceptor
- IExclusionRegistry    - redaction rules
- IChangelogStore       - append-only, time-partitioned change records
- ICaptureQueue         - claimable queue of pending changes
- IAlertStore           - alert rules and cooldown-gated alert events
- IArchiveSink          - cold namespace for archived partitions
- IAuditUnitOfWork      - one transactional scope over the audit backend
- IAuditBackend         - factory of units of work
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta
from typing import Any, Protocol

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
)


class IContextProvider(Protocol):
    """Supplies identity metadata for the current mutation. Any value may be unset."""

    def actor_id(self) -> str | None: ...

    def tenant_id(self) -> str | None: ...

    def request_id(self) -> str | None: ...

    def client_address(self) -> str | None: ...


class IPrimaryStore(Protocol):
    """The primary transactional datastore, seen only through current-row reads."""

    async def fetch_current(self, entity: str, row_identity: str) -> dict[str, Any] | None:
        """Return the live field map of a row, or None if it does not exist."""
        ...


class ICaptureSink(Protocol):
    """Transaction-scoped writer the interceptor stages audit rows into.

    Whatever is written through the sink commits or rolls back together with
    the mutation that triggered it.
    """

    @property
    def transaction_id(self) -> int: ...

    @property
    def captured_at(self) -> datetime: ...

    @property
    def principal(self) -> str:
        """Principal performing the write, recorded as ``changed_by``."""
        ...

    def next_sequence(self) -> int:
        """Return the next in-transaction sequence number."""
        ...

    async def excluded_fields(self, entity: str) -> frozenset[str]:
        """Return the currently excluded field names for an entity."""
        ...

    async def write_change(self, change: PendingChange) -> None:
        """Stage a change record (synchronous capture)."""
        ...

    async def enqueue_change(self, change: PendingChange) -> None:
        """Stage a queue entry (asynchronous capture)."""
        ...


class IExclusionRegistry(Protocol):
    """Registry of (entity, field) pairs whose values are never captured."""

    async def excluded_fields(self, entity: str) -> frozenset[str]: ...

    async def add(self, rule: ExclusionRule) -> ExclusionRule:
        """Register a rule. Registering an existing pair returns the stored rule."""
        ...

    async def remove(self, entity: str, field: str) -> bool:
        """Remove a rule. Returns False if no such rule existed."""
        ...

    async def list_rules(self, entity: str | None = None) -> list[ExclusionRule]: ...


class IChangelogStore(Protocol):
    """Append-only changelog, physically partitioned by captured_at."""

    async def append(self, changes: list[PendingChange]) -> list[ChangeRecord]:
        """Assign monotonic ids and persist all changes, or none of them."""
        ...

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
        """Records for one row with ``after < captured_at < before``, in replay order."""
        ...

    async def by_actor(
        self, actor_id: str, start: datetime, end: datetime, limit: int | None = None
    ) -> list[ChangeRecord]: ...

    async def by_tenant(
        self, tenant_id: str, start: datetime, end: datetime, limit: int | None = None
    ) -> list[ChangeRecord]: ...

    async def by_transaction(self, transaction_id: int) -> list[ChangeRecord]: ...

    async def summarize(self, start: datetime, end: datetime) -> list[ChangeSummaryRow]:
        """Change counts grouped by (entity, operation) over ``[start, end)``."""
        ...

    async def aggregate(
        self,
        start: datetime,
        end: datetime,
        group_by: str | None = None,
        entity: str | None = None,
        operation: Operation | None = None,
    ) -> dict[str | None, int]:
        """Change counts over ``[start, end)``, optionally grouped by one column.

        ``group_by`` is one of ``actor_id``, ``tenant_id``, ``entity``,
        ``operation`` or None. Rows with a NULL grouping value are omitted
        from grouped results.
        """
        ...

    async def list_partitions(self) -> list[Partition]: ...

    async def create_partition(self, name: str, start: datetime, end: datetime) -> Partition:
        """Create a ranged partition. Creating an existing partition is a no-op."""
        ...

    async def archive_partition(self, name: str) -> int:
        """Relocate a partition to the cold namespace. Returns rows moved."""
        ...

    async def drop_partition(self, name: str) -> int:
        """Drop a partition and its rows. Returns rows removed."""
        ...


class ICaptureQueue(Protocol):
    """Queue decoupling capture from changelog insertion."""

    async def enqueue(self, changes: list[PendingChange]) -> list[QueueEntry]: ...

    async def claim(
        self, worker_id: str, limit: int, lease: timedelta, now: datetime
    ) -> list[QueueEntry]:
        """Exclusively claim up to ``limit`` entries. Claimed entries are
        invisible to other workers until released or the lease expires."""
        ...

    async def release(self, worker_id: str, entry_ids: list[int]) -> None:
        """Make claimed entries immediately claimable again."""
        ...

    async def promote(
        self, worker_id: str, entries: list[QueueEntry], now: datetime
    ) -> list[ChangeRecord]:
        """Atomically insert still-owned entries into the changelog and remove them."""
        ...

    async def pending(self, entity: str, row_identity: str) -> list[PendingChange]:
        """Changes for one row that are still waiting in the queue."""
        ...

    async def depth(self) -> int: ...


class IAlertStore(Protocol):
    """Alert rules and their firings."""

    async def add_rule(self, rule: AlertRule) -> AlertRule: ...

    async def get_rule(self, name: str) -> AlertRule: ...

    async def list_rules(self, enabled_only: bool = False) -> list[AlertRule]: ...

    async def set_enabled(self, name: str, enabled: bool) -> AlertRule: ...

    async def record_firing(
        self, rule: AlertRule, fired_at: datetime, observed_value: float
    ) -> AlertEvent | None:
        """Create an AlertEvent unless one fired within the rule's cooldown.

        The cooldown check and the insert are one atomic step against the
        store, so concurrent evaluators cannot both fire.
        """
        ...

    async def list_events(
        self,
        start: datetime,
        end: datetime,
        rule_name: str | None = None,
        active_only: bool = False,
    ) -> list[AlertEvent]: ...

    async def acknowledge(self, event_id: str, actor_id: str, at: datetime) -> AlertEvent: ...


class IArchiveSink(Protocol):
    """Cold namespace receiving archived partitions. Never merged back."""

    def write(self, partition_name: str, records: list[ChangeRecord]) -> None: ...

    def read(self, partition_name: str) -> list[ChangeRecord]: ...


class IAuditUnitOfWork(Protocol):
    """Repositories sharing one transactional scope."""

    changes: IChangelogStore
    queue: ICaptureQueue
    exclusions: IExclusionRegistry
    alerts: IAlertStore


class IAuditBackend(Protocol):
    """Opens units of work. Commits on clean exit, rolls back on exception."""

    def unit_of_work(self) -> AbstractAsyncContextManager[IAuditUnitOfWork]: ...
