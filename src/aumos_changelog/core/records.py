"""Domain records for the audit changelog.

Every captured mutation is represented first as a ``PendingChange`` (staged in
the mutating transaction or carried by a queue entry) and then, once the
store assigns it a monotonic id, as an immutable ``ChangeRecord``.

Snapshots are plain ``dict[str, Any]`` maps of field name to value with all
excluded fields already removed; only the *names* of removed fields are kept,
in ``redacted_fields``.
"""

from __future__ import annotations

import operator
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator, model_validator

Operation = Literal["INSERT", "UPDATE", "DELETE"]
Comparator = Literal[">", ">=", "<", "<=", "==", "!="]
Severity = Literal["info", "warning", "critical"]
AlertMetric = Literal[
    "change_count",
    "max_changes_per_actor",
    "max_changes_per_tenant",
    "max_changes_per_entity",
]
PartitionStatus = Literal["open", "archived", "dropped"]

OrderingKey = tuple[datetime, int, int]

# Principal recorded when no database role or configured service principal applies.
DEFAULT_PRINCIPAL = "aumos-changelog"

_COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def to_utc(dt: datetime) -> datetime:
    """Normalise a datetime to UTC. Naive values are treated as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CaptureContext(BaseModel):
    """Actor, tenant and request metadata attached to one mutation.

    Passed explicitly into every capture call; never read from ambient
    global state. Any field may be unset.
    """

    model_config = ConfigDict(frozen=True)

    actor_id: str | None = None
    tenant_id: str | None = None
    request_id: str | None = None
    client_address: IPvAnyAddress | None = None

    @classmethod
    def from_provider(cls, provider: Any) -> CaptureContext:
        """Snapshot the current values of an ``IContextProvider``."""
        return cls(
            actor_id=provider.actor_id(),
            tenant_id=provider.tenant_id(),
            request_id=provider.request_id(),
            client_address=provider.client_address(),
        )


class PendingChange(BaseModel):
    """A captured row mutation that has not yet been assigned a changelog id.

    Attributes:
        entity: Name of the tracked entity (table) that was mutated.
        operation: INSERT, UPDATE or DELETE.
        row_identity: Stable identity of the mutated row (its key as text).
        old_snapshot: Redacted row state before the mutation. UPDATE/DELETE only.
        new_snapshot: Redacted row state after the mutation. INSERT/UPDATE only.
        changed_fields: Non-excluded fields whose value changed. UPDATE only.
        redacted_fields: Names of fields stripped by exclusion rules at capture.
        captured_at: Capture timestamp (UTC), shared by a transaction.
        changed_by: Principal that performed the write (database role or
            service principal). Always set, unlike the application actor.
        actor_id: Acting user or service, if known.
        tenant_id: Owning tenant, if known.
        request_id: Originating request, if known.
        client_address: Client IP address, if known.
        transaction_id: Identifier of the mutating transaction.
        sequence: Position of this capture within its transaction.
    """

    model_config = ConfigDict(frozen=True)

    entity: str = Field(..., min_length=1)
    operation: Operation
    row_identity: str = Field(..., min_length=1)
    old_snapshot: dict[str, Any] | None = None
    new_snapshot: dict[str, Any] | None = None
    changed_fields: frozenset[str] | None = None
    redacted_fields: frozenset[str] = frozenset()
    captured_at: datetime
    changed_by: str = Field(..., min_length=1)
    actor_id: str | None = None
    tenant_id: str | None = None
    request_id: str | None = None
    client_address: str | None = None
    transaction_id: int
    sequence: int = Field(..., ge=0)

    @field_validator("captured_at")
    @classmethod
    def _normalise_captured_at(cls, value: datetime) -> datetime:
        return to_utc(value)

    @model_validator(mode="after")
    def _check_snapshot_shape(self) -> PendingChange:
        has_old = self.old_snapshot is not None
        has_new = self.new_snapshot is not None
        if has_old != (self.operation in ("UPDATE", "DELETE")):
            raise ValueError(f"old_snapshot must be present iff operation is UPDATE or DELETE ({self.operation})")
        if has_new != (self.operation in ("INSERT", "UPDATE")):
            raise ValueError(f"new_snapshot must be present iff operation is INSERT or UPDATE ({self.operation})")
        if (self.changed_fields is not None) != (self.operation == "UPDATE"):
            raise ValueError("changed_fields is required for UPDATE and forbidden otherwise")
        return self

    @property
    def ordering_key(self) -> OrderingKey:
        """Total replay order: (captured_at, transaction_id, sequence)."""
        return (self.captured_at, self.transaction_id, self.sequence)


class ChangeRecord(PendingChange):
    """Immutable audit entry for one row mutation, with its monotonic id."""

    id: int = Field(..., ge=1)

    @classmethod
    def from_pending(cls, change: PendingChange, record_id: int) -> ChangeRecord:
        return cls.model_validate({**change.model_dump(), "id": record_id})


class QueueEntry(BaseModel):
    """Pending change waiting in the capture queue.

    ``claimed_by``/``claim_expires_at`` are set while a worker holds the
    entry; an expired claim makes the entry claimable again.
    """

    entry_id: int
    change: PendingChange
    enqueued_at: datetime
    claimed_by: str | None = None
    claim_expires_at: datetime | None = None

    def is_claimable(self, now: datetime) -> bool:
        return self.claimed_by is None or (
            self.claim_expires_at is not None and self.claim_expires_at <= now
        )


class ExclusionRule(BaseModel):
    """A field whose values are never captured for an entity.

    ``excluded_by`` names who added the rule; ``excluded_at`` when.
    """

    model_config = ConfigDict(frozen=True)

    entity: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    excluded_by: str = Field(default=DEFAULT_PRINCIPAL, min_length=1)
    excluded_at: datetime = Field(default_factory=utc_now)


class AlertPredicate(BaseModel):
    """Aggregate evaluated over the changelog window ending at evaluation time.

    Attributes:
        metric: ``change_count`` counts every matching change; the
            ``max_changes_per_*`` metrics take the largest count of any single
            actor, tenant or entity.
        window: Length of the trailing window.
        entity: Only count changes to this entity, if set.
        operation: Only count changes of this operation, if set.
    """

    model_config = ConfigDict(frozen=True)

    metric: AlertMetric = "change_count"
    window: timedelta = Field(default=timedelta(hours=1))
    entity: str | None = None
    operation: Operation | None = None

    @field_validator("window")
    @classmethod
    def _positive_window(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("window must be positive")
        return value

    @property
    def group_by(self) -> str | None:
        return {
            "change_count": None,
            "max_changes_per_actor": "actor_id",
            "max_changes_per_tenant": "tenant_id",
            "max_changes_per_entity": "entity",
        }[self.metric]


class AlertRule(BaseModel):
    """Threshold rule over a changelog aggregate, rate limited by ``cooldown``."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=255)
    predicate: AlertPredicate
    threshold: float
    comparator: Comparator = ">"
    severity: Severity = "warning"
    enabled: bool = True
    cooldown: timedelta = Field(default=timedelta(hours=1))

    @field_validator("cooldown")
    @classmethod
    def _non_negative_cooldown(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("cooldown must not be negative")
        return value

    def is_triggered(self, observed: float) -> bool:
        return _COMPARATORS[self.comparator](observed, self.threshold)


class AlertEvent(BaseModel):
    """One firing of an alert rule."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    rule_name: str
    fired_at: datetime
    observed_value: float
    threshold: float
    severity: Severity
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None

    @property
    def is_active(self) -> bool:
        return self.acknowledged_at is None


class Partition(BaseModel):
    """A contiguous ``[range_start, range_end)`` slice of the changelog.

    The default partition has no bounds and holds rows that fall outside
    every ranged partition.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    range_start: datetime | None = None
    range_end: datetime | None = None
    status: PartitionStatus = "open"
    is_default: bool = False

    def contains(self, ts: datetime) -> bool:
        if self.is_default or self.range_start is None or self.range_end is None:
            return False
        return self.range_start <= ts < self.range_end

    def overlaps(self, start: datetime | None, end: datetime | None) -> bool:
        if self.is_default or self.range_start is None or self.range_end is None:
            return True
        if start is not None and self.range_end <= start:
            return False
        if end is not None and self.range_start >= end:
            return False
        return True


class TimeRange(BaseModel):
    """Half-open time interval ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalise(cls, value: datetime) -> datetime:
        return to_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> TimeRange:
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class ChangeSummaryRow(BaseModel):
    """Count of changes for one (entity, operation) pair in a time range."""

    model_config = ConfigDict(frozen=True)

    entity: str
    operation: Operation
    count: int


class ReconstructedState(BaseModel):
    """Historical state of one row.

    ``values`` never contains a field listed in ``unknown_fields``; those are
    fields whose value at ``as_of`` cannot be known because it was redacted.
    """

    model_config = ConfigDict(frozen=True)

    entity: str
    row_identity: str
    as_of: datetime
    values: dict[str, Any]
    unknown_fields: frozenset[str] = frozenset()
