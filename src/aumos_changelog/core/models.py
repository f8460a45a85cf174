"""SQLAlchemy ORM models for the audit changelog.

All tables use the `chg_` prefix.

Models:
- ChangelogEntry      - IMMUTABLE change record, range-partitioned on captured_at
- CaptureQueueItem    - Pending change awaiting promotion by a queue worker
- ExcludedField       - (entity, field) pairs never captured
- AlertRuleRecord     - Threshold rule over a changelog aggregate
- AlertEventRecord    - One firing of an alert rule
- ChangelogPartition  - Registry of changelog partitions and their status

IMPORTANT: chg_changelog is append-only. Rows are only ever inserted by
SqlChangelogStore.append() and removed as whole partitions by retention.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Sequence,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from aumos_changelog.core.records import (
    AlertEvent,
    AlertPredicate,
    AlertRule,
    ChangeRecord,
    ExclusionRule,
    Partition,
    PendingChange,
)

CHANGELOG_TABLE = "chg_changelog"
DEFAULT_PARTITION_TABLE = "chg_changelog_default"

# Shared by all partitions; partitioned tables have no identity column.
changelog_id_seq = Sequence("chg_changelog_id_seq")


class Base(DeclarativeBase):
    pass


class ChangelogEntry(Base):
    """Immutable record of one row mutation.

    The table is partitioned by RANGE (captured_at); the primary key therefore
    includes captured_at. Snapshots hold redacted field maps and never contain
    a value for a field listed in redacted_fields.

    Attributes:
        id: Monotonic id from chg_changelog_id_seq.
        captured_at: Capture time (UTC) shared by one transaction.
        entity: Tracked entity (table) name.
        operation: INSERT | UPDATE | DELETE.
        row_identity: Key of the mutated row, as text.
        old_snapshot: Redacted row state before the mutation.
        new_snapshot: Redacted row state after the mutation.
        changed_fields: Non-excluded changed fields (UPDATE only).
        redacted_fields: Names of the fields stripped at capture.
        changed_by: Database role or service principal that performed the write.
        actor_id: Acting user or service.
        tenant_id: Owning tenant.
        request_id: Originating request id.
        client_address: Client IP address.
        transaction_id: Id of the mutating transaction.
        sequence: Capture position within the transaction.
    """

    __tablename__ = CHANGELOG_TABLE
    __table_args__ = (
        CheckConstraint("operation IN ('INSERT', 'UPDATE', 'DELETE')", name="ck_chg_changelog_operation"),
        CheckConstraint(
            "(old_snapshot IS NOT NULL) = (operation IN ('UPDATE', 'DELETE'))",
            name="ck_chg_changelog_old_snapshot",
        ),
        CheckConstraint(
            "(new_snapshot IS NOT NULL) = (operation IN ('INSERT', 'UPDATE'))",
            name="ck_chg_changelog_new_snapshot",
        ),
        Index("ix_chg_changelog_row", "entity", "row_identity", "captured_at"),
        Index("ix_chg_changelog_actor", "actor_id", "captured_at"),
        Index("ix_chg_changelog_tenant", "tenant_id", "captured_at"),
        Index("ix_chg_changelog_transaction", "transaction_id", "sequence"),
        {"postgresql_partition_by": "RANGE (captured_at)"},
    )

    id: Mapped[int] = mapped_column(
        BigInteger,
        changelog_id_seq,
        server_default=changelog_id_seq.next_value(),
        primary_key=True,
        comment="Monotonic change id",
    )
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        primary_key=True,
        comment="Capture timestamp (UTC), partition key",
    )
    entity: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="INSERT | UPDATE | DELETE",
    )
    row_identity: Mapped[str] = mapped_column(Text, nullable=False)
    old_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    new_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    changed_fields: Mapped[list[str] | None] = mapped_column(
        ARRAY(Text),
        nullable=True,
        comment="Non-excluded changed fields. NULL unless operation = UPDATE.",
    )
    redacted_fields: Mapped[list[str]] = mapped_column(
        ARRAY(Text),
        nullable=False,
        server_default=text("'{}'"),
        comment="Names of fields stripped by exclusion rules. Values are never stored.",
    )
    changed_by: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        server_default=text("current_user"),
        comment="Principal that performed the write",
    )
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    @classmethod
    def from_change(cls, change: PendingChange) -> ChangelogEntry:
        return cls(
            captured_at=change.captured_at,
            entity=change.entity,
            operation=change.operation,
            row_identity=change.row_identity,
            old_snapshot=change.old_snapshot,
            new_snapshot=change.new_snapshot,
            changed_fields=sorted(change.changed_fields) if change.changed_fields is not None else None,
            redacted_fields=sorted(change.redacted_fields),
            changed_by=change.changed_by,
            actor_id=change.actor_id,
            tenant_id=change.tenant_id,
            request_id=change.request_id,
            client_address=change.client_address,
            transaction_id=change.transaction_id,
            sequence=change.sequence,
        )

    def to_record(self) -> ChangeRecord:
        return ChangeRecord(
            id=self.id,
            captured_at=self.captured_at,
            entity=self.entity,
            operation=self.operation,  # type: ignore[arg-type]
            row_identity=self.row_identity,
            old_snapshot=self.old_snapshot,
            new_snapshot=self.new_snapshot,
            changed_fields=frozenset(self.changed_fields) if self.changed_fields is not None else None,
            redacted_fields=frozenset(self.redacted_fields or ()),
            changed_by=self.changed_by,
            actor_id=self.actor_id,
            tenant_id=self.tenant_id,
            request_id=self.request_id,
            client_address=self.client_address,
            transaction_id=self.transaction_id,
            sequence=self.sequence,
        )


class CaptureQueueItem(Base):
    """Pending change written by asynchronous capture.

    A worker claims rows with SELECT ... FOR UPDATE SKIP LOCKED and a lease
    (claimed_by, claim_expires_at), then deletes them in the same transaction
    that inserts them into chg_changelog.

    Attributes:
        id: Queue order.
        entity: Entity of the carried change, for pending lookups.
        row_identity: Row of the carried change, for pending lookups.
        payload: The redacted PendingChange as JSON.
        enqueued_at: Time the entry was written.
        claimed_by: Worker id holding the claim.
        claim_expires_at: End of the claim lease.
    """

    __tablename__ = "chg_capture_queue"
    __table_args__ = (
        Index("ix_chg_capture_queue_row", "entity", "row_identity"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    entity: Mapped[str] = mapped_column(String(255), nullable=False)
    row_identity: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ExcludedField(Base):
    """A field of an entity that is never captured.

    Attributes:
        entity: Entity name.
        field: Field name.
        reason: Why the field is excluded (e.g. "contains PII").
        excluded_by: Who added the rule.
        excluded_at: Time the rule was added.
    """

    __tablename__ = "chg_excluded_fields"

    entity: Mapped[str] = mapped_column(String(255), primary_key=True)
    field: Mapped[str] = mapped_column(String(255), primary_key=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    excluded_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        server_default=text("current_user"),
    )
    excluded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def to_rule(self) -> ExclusionRule:
        return ExclusionRule(
            entity=self.entity,
            field=self.field,
            reason=self.reason,
            excluded_by=self.excluded_by,
            excluded_at=self.excluded_at,
        )


class AlertRuleRecord(Base):
    """Persisted AlertRule. The predicate is stored as JSON.

    Attributes:
        name: Unique rule name.
        predicate: AlertPredicate as JSON (metric, window, entity, operation).
        threshold: Value the observed aggregate is compared with.
        comparator: > | >= | < | <= | == | !=
        severity: info | warning | critical
        enabled: Disabled rules are skipped by the evaluator.
        cooldown_seconds: Minimum spacing between two firings.
    """

    __tablename__ = "chg_alert_rules"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    predicate: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    comparator: Mapped[str] = mapped_column(String(2), nullable=False, default=">")
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="warning")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cooldown_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    @classmethod
    def from_rule(cls, rule: AlertRule) -> AlertRuleRecord:
        return cls(
            name=rule.name,
            predicate=rule.predicate.model_dump(mode="json"),
            threshold=rule.threshold,
            comparator=rule.comparator,
            severity=rule.severity,
            enabled=rule.enabled,
            cooldown_seconds=rule.cooldown.total_seconds(),
        )

    def to_rule(self) -> AlertRule:
        return AlertRule(
            name=self.name,
            predicate=AlertPredicate.model_validate(self.predicate),
            threshold=self.threshold,
            comparator=self.comparator,  # type: ignore[arg-type]
            severity=self.severity,  # type: ignore[arg-type]
            enabled=self.enabled,
            cooldown=timedelta(seconds=self.cooldown_seconds),
        )


class AlertEventRecord(Base):
    """One firing of an alert rule.

    Attributes:
        event_id: UUID string.
        rule_name: Rule that fired.
        fired_at: Evaluation time of the firing.
        observed_value: Aggregate value that crossed the threshold.
        threshold: Threshold at firing time.
        severity: Severity at firing time.
        acknowledged_at: Set once an operator acknowledges the event.
        acknowledged_by: Acknowledging actor.
    """

    __tablename__ = "chg_alert_events"
    __table_args__ = (
        Index("ix_chg_alert_events_rule_fired", "rule_name", "fired_at"),
    )

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rule_name: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("chg_alert_rules.name"),
        nullable=False,
    )
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    observed_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @classmethod
    def from_event(cls, event: AlertEvent) -> AlertEventRecord:
        return cls(
            event_id=event.event_id,
            rule_name=event.rule_name,
            fired_at=event.fired_at,
            observed_value=event.observed_value,
            threshold=event.threshold,
            severity=event.severity,
            acknowledged_at=event.acknowledged_at,
            acknowledged_by=event.acknowledged_by,
        )

    def to_event(self) -> AlertEvent:
        return AlertEvent(
            event_id=self.event_id,
            rule_name=self.rule_name,
            fired_at=self.fired_at,
            observed_value=self.observed_value,
            threshold=self.threshold,
            severity=self.severity,  # type: ignore[arg-type]
            acknowledged_at=self.acknowledged_at,
            acknowledged_by=self.acknowledged_by,
        )


class ChangelogPartition(Base):
    """Registry row for one partition of chg_changelog.

    Attributes:
        name: Partition table name.
        range_start: Inclusive lower bound (NULL for the default partition).
        range_end: Exclusive upper bound (NULL for the default partition).
        status: open | archived | dropped
        is_default: True only for chg_changelog_default.
        retired_at: Time the partition was archived or dropped.
    """

    __tablename__ = "chg_partitions"

    name: Mapped[str] = mapped_column(String(63), primary_key=True)
    range_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    range_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_partition(self) -> Partition:
        return Partition(
            name=self.name,
            range_start=self.range_start,
            range_end=self.range_end,
            status=self.status,  # type: ignore[arg-type]
            is_default=self.is_default,
        )
