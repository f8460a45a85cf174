"""Pydantic request and response schemas for the changelog API.

All API inputs and outputs use Pydantic models, never raw dicts.
Schemas are grouped by resource type.

Resources:
- ChangeRecord - history, activity and transaction queries
- ReconstructedState - point-in-time row state
- ExclusionRule - redaction administration
- Partition - partition administration and retention
- AlertRule / AlertEvent - alert administration and queries
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from aumos_changelog.core.records import (
    AlertEvent,
    AlertMetric,
    AlertPredicate,
    AlertRule,
    ChangeRecord,
    Comparator,
    ExclusionRule,
    Operation,
    Partition,
    PartitionStatus,
    ReconstructedState,
    Severity,
)
from aumos_changelog.core.retention import RetentionReport


# ---------------------------------------------------------------------------
# ChangeRecord schemas
# ---------------------------------------------------------------------------


class ChangeRecordResponse(BaseModel):
    """Response schema for one change record."""

    id: int = Field(description="Monotonic change id")
    entity: str = Field(description="Mutated entity")
    operation: Operation = Field(description="INSERT | UPDATE | DELETE")
    row_identity: str = Field(description="Identity of the mutated row")
    old_snapshot: dict[str, Any] | None = Field(description="Row state before the mutation")
    new_snapshot: dict[str, Any] | None = Field(description="Row state after the mutation")
    changed_fields: list[str] | None = Field(description="Changed fields (UPDATE only)")
    redacted_fields: list[str] = Field(description="Fields whose values are withheld")
    captured_at: datetime = Field(description="Capture timestamp (UTC)")
    changed_by: str = Field(description="Principal that performed the write")
    actor_id: str | None = Field(description="Acting user or service")
    tenant_id: str | None = Field(description="Owning tenant")
    request_id: str | None = Field(description="Originating request")
    client_address: str | None = Field(description="Client IP address")
    transaction_id: int = Field(description="Mutating transaction")
    sequence: int = Field(description="Position within the transaction")

    @classmethod
    def from_record(cls, record: ChangeRecord) -> ChangeRecordResponse:
        return cls(
            **record.model_dump(exclude={"changed_fields", "redacted_fields"}),
            changed_fields=sorted(record.changed_fields) if record.changed_fields is not None else None,
            redacted_fields=sorted(record.redacted_fields),
        )


class ReconstructedStateResponse(BaseModel):
    """Response schema for a point-in-time row state."""

    entity: str
    row_identity: str
    as_of: datetime
    values: dict[str, Any] = Field(description="Known field values at as_of")
    unknown_fields: list[str] = Field(description="Fields whose value at as_of cannot be known")

    @classmethod
    def from_state(cls, state: ReconstructedState) -> ReconstructedStateResponse:
        return cls(
            entity=state.entity,
            row_identity=state.row_identity,
            as_of=state.as_of,
            values=state.values,
            unknown_fields=sorted(state.unknown_fields),
        )


class ChangeSummaryResponse(BaseModel):
    """Change count for one (entity, operation) pair."""

    entity: str
    operation: Operation
    count: int


class QueueDepthResponse(BaseModel):
    """Number of entries waiting in the capture queue."""

    depth: int


class CaptureStatusResponse(BaseModel):
    """Entities with capture enabled."""

    tracked_entities: list[str]


# ---------------------------------------------------------------------------
# ExclusionRule schemas
# ---------------------------------------------------------------------------


class ExclusionCreateRequest(BaseModel):
    """Request body for excluding a field from capture."""

    entity: str = Field(min_length=1, max_length=255, description="Entity name")
    field: str = Field(min_length=1, max_length=255, description="Field name")
    reason: str = Field(min_length=1, description="Why the field is excluded, e.g. 'contains PII'")
    excluded_by: str | None = Field(
        default=None,
        min_length=1,
        max_length=255,
        description="Who excludes the field. Defaults to the service principal.",
    )


class ExclusionResponse(BaseModel):
    """Response schema for an exclusion rule."""

    entity: str
    field: str
    reason: str
    excluded_by: str
    excluded_at: datetime

    @classmethod
    def from_rule(cls, rule: ExclusionRule) -> ExclusionResponse:
        return cls(**rule.model_dump())


# ---------------------------------------------------------------------------
# Partition schemas
# ---------------------------------------------------------------------------


class PartitionCreateRequest(BaseModel):
    """Request body for creating the partition of the period containing period_start."""

    period_start: datetime = Field(description="Any time inside the target period")


class ArchivePartitionsRequest(BaseModel):
    """Request body for retiring partitions that ended at or before older_than."""

    older_than: datetime = Field(description="Retention horizon (UTC)")


class PartitionResponse(BaseModel):
    """Response schema for a changelog partition."""

    name: str
    range_start: datetime | None
    range_end: datetime | None
    status: PartitionStatus
    is_default: bool

    @classmethod
    def from_partition(cls, partition: Partition) -> PartitionResponse:
        return cls(**partition.model_dump())


class RetentionReportResponse(BaseModel):
    """Outcome of a retention pass."""

    older_than: datetime
    archived: list[str]
    dropped: list[str]
    rows_moved: int
    failed: list[str] = Field(description="Partitions retained after repeated failures")

    @classmethod
    def from_report(cls, report: RetentionReport) -> RetentionReportResponse:
        return cls(
            older_than=report.older_than,
            archived=report.archived,
            dropped=report.dropped,
            rows_moved=report.rows_moved,
            failed=[error.partition for error in report.failed],
        )


# ---------------------------------------------------------------------------
# Alert schemas
# ---------------------------------------------------------------------------


class AlertRuleCreateRequest(BaseModel):
    """Request body for registering an alert rule."""

    name: str = Field(min_length=1, max_length=255, description="Unique rule name")
    metric: AlertMetric = Field(default="change_count", description="Aggregate to observe")
    window_seconds: float = Field(gt=0, description="Length of the trailing window")
    entity: str | None = Field(default=None, description="Only count changes to this entity")
    operation: Operation | None = Field(default=None, description="Only count this operation")
    threshold: float = Field(description="Value the aggregate is compared with")
    comparator: Comparator = Field(default=">")
    severity: Severity = Field(default="warning")
    cooldown_seconds: float = Field(default=3600, ge=0, description="Minimum spacing between firings")
    enabled: bool = True

    def to_rule(self) -> AlertRule:
        return AlertRule(
            name=self.name,
            predicate=AlertPredicate(
                metric=self.metric,
                window=timedelta(seconds=self.window_seconds),
                entity=self.entity,
                operation=self.operation,
            ),
            threshold=self.threshold,
            comparator=self.comparator,
            severity=self.severity,
            enabled=self.enabled,
            cooldown=timedelta(seconds=self.cooldown_seconds),
        )


class AlertRuleResponse(BaseModel):
    """Response schema for an alert rule."""

    name: str
    metric: AlertMetric
    window_seconds: float
    entity: str | None
    operation: Operation | None
    threshold: float
    comparator: Comparator
    severity: Severity
    cooldown_seconds: float
    enabled: bool

    @classmethod
    def from_rule(cls, rule: AlertRule) -> AlertRuleResponse:
        return cls(
            name=rule.name,
            metric=rule.predicate.metric,
            window_seconds=rule.predicate.window.total_seconds(),
            entity=rule.predicate.entity,
            operation=rule.predicate.operation,
            threshold=rule.threshold,
            comparator=rule.comparator,
            severity=rule.severity,
            cooldown_seconds=rule.cooldown.total_seconds(),
            enabled=rule.enabled,
        )


class AlertAcknowledgeRequest(BaseModel):
    """Request body for acknowledging an alert event."""

    actor_id: str = Field(min_length=1, description="Operator acknowledging the alert")


class AlertEventResponse(BaseModel):
    """Response schema for an alert event."""

    event_id: str
    rule_name: str
    fired_at: datetime
    observed_value: float
    threshold: float
    severity: Severity
    acknowledged_at: datetime | None
    acknowledged_by: str | None

    @classmethod
    def from_event(cls, event: AlertEvent) -> AlertEventResponse:
        return cls(**event.model_dump())
