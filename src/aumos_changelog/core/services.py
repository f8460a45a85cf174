"""Read and admin services for the audit changelog.

Two service classes:
- ChangelogService: Read API - history, point-in-time state, activity, summaries, alerts
- ChangelogAdminService: Admin API - capture toggles, exclusions, partitions, alert rules

Both are async-first, take their collaborators through the constructor and
contain no framework code. Every read path masks the fields that are excluded
*now*, so a later exclusion never leaks through an older record.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from aumos_changelog.core.interceptor import CaptureInterceptor
from aumos_changelog.core.interfaces import IAuditBackend, IAuditUnitOfWork
from aumos_changelog.core.reconstruction import ReconstructionEngine
from aumos_changelog.core.records import (
    DEFAULT_PRINCIPAL,
    AlertEvent,
    AlertRule,
    ChangeRecord,
    ChangeSummaryRow,
    ExclusionRule,
    Partition,
    ReconstructedState,
    TimeRange,
    utc_now,
)
from aumos_changelog.core.redaction import mask_record
from aumos_changelog.core.retention import PartitionManager, RetentionReport
from aumos_changelog.errors import NotFoundError, ValidationError
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 1000


def _check_limit(limit: int | None) -> None:
    if limit is not None and not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


async def _masked(uow: IAuditUnitOfWork, records: list[ChangeRecord]) -> list[ChangeRecord]:
    excluded: dict[str, frozenset[str]] = {}
    masked = []
    for record in records:
        if record.entity not in excluded:
            excluded[record.entity] = await uow.exclusions.excluded_fields(record.entity)
        masked.append(mask_record(record, excluded[record.entity]))
    return masked


class ChangelogService:
    """Read API over the changelog.

    Args:
        backend: Audit backend to read from.
        reconstruction: Engine answering point-in-time state queries.
    """

    def __init__(self, backend: IAuditBackend, reconstruction: ReconstructionEngine) -> None:
        self._backend = backend
        self._reconstruction = reconstruction

    async def get_history(
        self, entity: str, row_identity: str, limit: int | None = None
    ) -> list[ChangeRecord]:
        """Return the recorded changes of one row, newest first.

        Args:
            entity: Entity name.
            row_identity: Row identity.
            limit: Maximum number of records.

        Returns:
            Change records, newest first. Empty if the row has no history.
        """
        _check_limit(limit)
        async with self._backend.unit_of_work() as uow:
            records = await uow.changes.history(entity, row_identity, limit=limit, newest_first=True)
            return await _masked(uow, records)

    async def get_state_at(
        self, entity: str, row_identity: str, as_of: datetime
    ) -> ReconstructedState | None:
        """Reconstruct a row as it stood at ``as_of``.

        Returns:
            The state, or None if the row did not exist at that time.

        Raises:
            ReconstructionAmbiguity: If two changes tie on the ordering key.
            ReconstructionIntegrityError: If the row's history is contradictory.
        """
        async with self._backend.unit_of_work() as uow:
            return await self._reconstruction.reconstruct(uow, entity, row_identity, as_of)

    async def get_actor_activity(
        self, actor_id: str, time_range: TimeRange, limit: int | None = None
    ) -> list[ChangeRecord]:
        """Changes made by one actor within ``[start, end)``, newest first."""
        _check_limit(limit)
        async with self._backend.unit_of_work() as uow:
            records = await uow.changes.by_actor(actor_id, time_range.start, time_range.end, limit)
            return await _masked(uow, records)

    async def get_tenant_activity(
        self, tenant_id: str, time_range: TimeRange, limit: int | None = None
    ) -> list[ChangeRecord]:
        """Changes attributed to one tenant within ``[start, end)``, newest first."""
        _check_limit(limit)
        async with self._backend.unit_of_work() as uow:
            records = await uow.changes.by_tenant(tenant_id, time_range.start, time_range.end, limit)
            return await _masked(uow, records)

    async def get_transaction_changes(self, transaction_id: int) -> list[ChangeRecord]:
        """All changes of one transaction in capture order."""
        async with self._backend.unit_of_work() as uow:
            records = await uow.changes.by_transaction(transaction_id)
            return await _masked(uow, records)

    async def get_change_summary(self, time_range: TimeRange) -> list[ChangeSummaryRow]:
        async with self._backend.unit_of_work() as uow:
            return await uow.changes.summarize(time_range.start, time_range.end)

    async def get_active_alerts(self, time_range: TimeRange) -> list[AlertEvent]:
        """Unacknowledged alert events fired within the range, newest first."""
        async with self._backend.unit_of_work() as uow:
            return await uow.alerts.list_events(time_range.start, time_range.end, active_only=True)

    async def get_queue_depth(self) -> int:
        async with self._backend.unit_of_work() as uow:
            return await uow.queue.depth()


class ChangelogAdminService:
    """Admin API: capture configuration, partitions and alert rules.

    Args:
        backend: Audit backend to administer.
        interceptor: Interceptor whose tracked entities are toggled.
        partitions: Partition manager used for partition operations.
        clock: Source of the current UTC time.
        principal: Recorded as ``excluded_by`` when no actor is given.
    """

    def __init__(
        self,
        backend: IAuditBackend,
        interceptor: CaptureInterceptor,
        partitions: PartitionManager,
        clock: Callable[[], datetime] = utc_now,
        principal: str = DEFAULT_PRINCIPAL,
    ) -> None:
        self._backend = backend
        self._interceptor = interceptor
        self._partitions = partitions
        self._clock = clock
        self._principal = principal

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def enable_capture(self, entity: str) -> None:
        self._interceptor.enable_capture(entity)

    def disable_capture(self, entity: str) -> None:
        self._interceptor.disable_capture(entity)

    def tracked_entities(self) -> list[str]:
        return sorted(self._interceptor.tracked_entities)

    # ------------------------------------------------------------------
    # Exclusions
    # ------------------------------------------------------------------

    async def add_exclusion(
        self, entity: str, field: str, reason: str, actor: str | None = None
    ) -> ExclusionRule:
        """Stop capturing ``field`` of ``entity`` from now on.

        Existing records keep their stored values but are masked on read.
        Adding an existing exclusion returns the stored rule.

        Args:
            entity: Entity name.
            field: Field name.
            reason: Why the field is excluded.
            actor: Who excludes it. Defaults to the service principal.
        """
        rule = ExclusionRule(
            entity=entity,
            field=field,
            reason=reason,
            excluded_by=actor or self._principal,
            excluded_at=self._clock(),
        )
        async with self._backend.unit_of_work() as uow:
            stored = await uow.exclusions.add(rule)
        logger.info("Exclusion added", entity=entity, field=field, excluded_by=stored.excluded_by)
        return stored

    async def remove_exclusion(self, entity: str, field: str) -> None:
        """Resume capturing ``field`` of ``entity``.

        Raises:
            NotFoundError: If no such exclusion exists.
        """
        async with self._backend.unit_of_work() as uow:
            removed = await uow.exclusions.remove(entity, field)
        if not removed:
            raise NotFoundError(resource="ExclusionRule", resource_id=f"{entity}.{field}")
        logger.info("Exclusion removed", entity=entity, field=field)

    async def list_exclusions(self, entity: str | None = None) -> list[ExclusionRule]:
        async with self._backend.unit_of_work() as uow:
            return await uow.exclusions.list_rules(entity)

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    async def create_partition(self, period_start: datetime) -> Partition:
        return await self._partitions.create_partition(period_start)

    async def list_partitions(self) -> list[Partition]:
        async with self._backend.unit_of_work() as uow:
            return await uow.changes.list_partitions()

    async def archive_partitions(self, older_than: datetime) -> RetentionReport:
        return await self._partitions.archive_partitions(older_than)

    # ------------------------------------------------------------------
    # Alert rules
    # ------------------------------------------------------------------

    async def register_alert_rule(self, rule: AlertRule) -> AlertRule:
        """Register a new alert rule.

        Raises:
            ConflictError: If a rule with the same name exists.
        """
        async with self._backend.unit_of_work() as uow:
            stored = await uow.alerts.add_rule(rule)
        logger.info(
            "Alert rule registered",
            rule=rule.name,
            metric=rule.predicate.metric,
            threshold=rule.threshold,
            comparator=rule.comparator,
        )
        return stored

    async def list_alert_rules(self) -> list[AlertRule]:
        async with self._backend.unit_of_work() as uow:
            return await uow.alerts.list_rules()

    async def enable_alert_rule(self, name: str) -> AlertRule:
        async with self._backend.unit_of_work() as uow:
            return await uow.alerts.set_enabled(name, True)

    async def disable_alert_rule(self, name: str) -> AlertRule:
        async with self._backend.unit_of_work() as uow:
            return await uow.alerts.set_enabled(name, False)

    async def acknowledge_alert(self, event_id: str, actor_id: str) -> AlertEvent:
        """Mark an alert event as handled. Acknowledging twice keeps the first acknowledgement."""
        async with self._backend.unit_of_work() as uow:
            event = await uow.alerts.acknowledge(event_id, actor_id, self._clock())
        logger.info("Alert acknowledged", event_id=event_id, rule=event.rule_name, actor_id=actor_id)
        return event
