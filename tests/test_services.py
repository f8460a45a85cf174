"""Tests for ChangelogService and ChangelogAdminService.

Both services run against the in-memory backend and primary store.

Tests verify:
- Read paths mask fields excluded after capture
- Page limits are enforced
- Activity, transaction and summary queries
- Point-in-time state through the read API
- Admin toggles, exclusions, partitions and alert rules
- Exclusion rules record who added them and when
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from aumos_changelog.adapters.memory import InMemoryAuditBackend
from aumos_changelog.adapters.primary_store import InMemoryPrimaryStore
from aumos_changelog.core.alerts import AlertEvaluator
from aumos_changelog.core.interceptor import CaptureInterceptor
from aumos_changelog.core.reconstruction import ReconstructionEngine
from aumos_changelog.core.records import AlertPredicate, AlertRule, CaptureContext, TimeRange
from aumos_changelog.core.retention import PartitionManager
from aumos_changelog.core.services import MAX_PAGE_SIZE, ChangelogAdminService, ChangelogService
from aumos_changelog.errors import ConflictError, NotFoundError, ValidationError

from .conftest import T0, FakeClock

HOUR = TimeRange(start=T0 - timedelta(minutes=30), end=T0 + timedelta(minutes=30))


@pytest.fixture()
def service(backend: InMemoryAuditBackend, primary_store: InMemoryPrimaryStore) -> ChangelogService:
    return ChangelogService(backend, ReconstructionEngine(primary_store))


@pytest.fixture()
def admin(
    backend: InMemoryAuditBackend, interceptor: CaptureInterceptor, clock: FakeClock
) -> ChangelogAdminService:
    partitions = PartitionManager(backend, period="month", partitions_ahead=1, clock=clock)
    return ChangelogAdminService(backend, interceptor, partitions, clock=clock)


async def _seed(primary_store: InMemoryPrimaryStore, context: CaptureContext, clock: FakeClock) -> None:
    async with primary_store.transaction(context) as tx:
        await tx.insert("accounts", {"id": 1, "name": "Alice", "email": "a@example.com"})
        await tx.insert("accounts", {"id": 2, "name": "Bob", "email": "b@example.com"})
    clock.advance(minutes=1)
    async with primary_store.transaction(context) as tx:
        await tx.update("accounts", "1", {"email": "alice@example.com"})


class TestChangelogService:
    @pytest.mark.asyncio()
    async def test_history_newest_first(
        self,
        service: ChangelogService,
        primary_store: InMemoryPrimaryStore,
        context: CaptureContext,
        clock: FakeClock,
    ) -> None:
        await _seed(primary_store, context, clock)

        history = await service.get_history("accounts", "1")

        assert [record.operation for record in history] == ["UPDATE", "INSERT"]
        assert history[0].changed_fields == {"email"}

    @pytest.mark.asyncio()
    async def test_history_of_unknown_row_is_empty(self, service: ChangelogService) -> None:
        assert await service.get_history("accounts", "404") == []

    @pytest.mark.asyncio()
    async def test_later_exclusion_masks_stored_records(
        self,
        service: ChangelogService,
        admin: ChangelogAdminService,
        primary_store: InMemoryPrimaryStore,
        context: CaptureContext,
        clock: FakeClock,
    ) -> None:
        """Records captured before an exclusion never serve the excluded field."""
        await _seed(primary_store, context, clock)
        await admin.add_exclusion("accounts", "email", "pii")

        history = await service.get_history("accounts", "1")
        activity = await service.get_actor_activity("user-1", HOUR)

        for record in [*history, *activity]:
            for snapshot in (record.old_snapshot, record.new_snapshot):
                assert snapshot is None or "email" not in snapshot
            assert "email" in record.redacted_fields
        assert history[0].changed_fields == frozenset()

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("limit", [0, MAX_PAGE_SIZE + 1])
    async def test_limit_out_of_range_is_rejected(self, service: ChangelogService, limit: int) -> None:
        with pytest.raises(ValidationError):
            await service.get_history("accounts", "1", limit=limit)
        with pytest.raises(ValidationError):
            await service.get_tenant_activity("tenant-1", HOUR, limit=limit)

    @pytest.mark.asyncio()
    async def test_activity_transaction_and_summary(
        self,
        service: ChangelogService,
        primary_store: InMemoryPrimaryStore,
        context: CaptureContext,
        clock: FakeClock,
    ) -> None:
        await _seed(primary_store, context, clock)

        by_actor = await service.get_actor_activity("user-1", HOUR, limit=2)
        by_tenant = await service.get_tenant_activity("tenant-1", HOUR)
        other_tenant = await service.get_tenant_activity("tenant-2", HOUR)
        first_tx = await service.get_transaction_changes(1)
        summary = await service.get_change_summary(HOUR)

        assert len(by_actor) == 2
        assert by_actor[0].operation == "UPDATE"
        assert len(by_tenant) == 3
        assert other_tenant == []
        assert [record.row_identity for record in first_tx] == ["1", "2"]
        assert [(row.entity, row.operation, row.count) for row in summary] == [
            ("accounts", "INSERT", 2),
            ("accounts", "UPDATE", 1),
        ]

    @pytest.mark.asyncio()
    async def test_state_at(
        self,
        service: ChangelogService,
        primary_store: InMemoryPrimaryStore,
        context: CaptureContext,
        clock: FakeClock,
    ) -> None:
        await _seed(primary_store, context, clock)

        before = await service.get_state_at("accounts", "1", T0 - timedelta(seconds=1))
        original = await service.get_state_at("accounts", "1", T0 + timedelta(seconds=30))

        assert before is None
        assert original is not None
        assert original.values == {"id": 1, "name": "Alice", "email": "a@example.com"}
        assert original.unknown_fields == frozenset()

    @pytest.mark.asyncio()
    async def test_active_alerts_and_queue_depth(
        self, service: ChangelogService, backend: InMemoryAuditBackend, primary_store, context, clock
    ) -> None:
        await _seed(primary_store, context, clock)
        await backend.repositories.alerts.add_rule(
            AlertRule(name="any", predicate=AlertPredicate(), threshold=0)
        )
        await AlertEvaluator(backend).evaluate_once(T0 + timedelta(minutes=5))

        [event] = await service.get_active_alerts(HOUR)

        assert event.rule_name == "any"
        assert event.observed_value == 3
        assert await service.get_queue_depth() == 0


class TestChangelogAdminService:
    def test_capture_toggles(self, admin: ChangelogAdminService) -> None:
        admin.enable_capture("orders")
        admin.disable_capture("accounts")

        assert admin.tracked_entities() == ["orders"]

    @pytest.mark.asyncio()
    async def test_exclusions(self, admin: ChangelogAdminService) -> None:
        first = await admin.add_exclusion("accounts", "ssn", "pii")
        again = await admin.add_exclusion("accounts", "ssn", "different reason")
        await admin.add_exclusion("orders", "card_number", "pci")

        assert again == first
        assert [rule.field for rule in await admin.list_exclusions("accounts")] == ["ssn"]
        assert len(await admin.list_exclusions()) == 2

        await admin.remove_exclusion("accounts", "ssn")
        assert await admin.list_exclusions("accounts") == []
        with pytest.raises(NotFoundError):
            await admin.remove_exclusion("accounts", "ssn")

    @pytest.mark.asyncio()
    async def test_exclusion_records_who_and_when(
        self, backend: InMemoryAuditBackend, interceptor: CaptureInterceptor, clock: FakeClock
    ) -> None:
        partitions = PartitionManager(backend, clock=clock)
        admin = ChangelogAdminService(backend, interceptor, partitions, clock=clock, principal="svc_admin")

        named = await admin.add_exclusion("accounts", "ssn", "pii", actor="dba_alice")
        clock.advance(minutes=5)
        defaulted = await admin.add_exclusion("orders", "card_number", "pci")

        assert (named.excluded_by, named.excluded_at) == ("dba_alice", T0)
        assert (defaulted.excluded_by, defaulted.excluded_at) == ("svc_admin", T0 + timedelta(minutes=5))
        assert {rule.excluded_by for rule in await admin.list_exclusions()} == {"dba_alice", "svc_admin"}

    @pytest.mark.asyncio()
    async def test_partitions(self, admin: ChangelogAdminService) -> None:
        created = await admin.create_partition(T0 - timedelta(days=60))
        report = await admin.archive_partitions(T0)

        assert created.name == "chg_changelog_p2026_01"
        assert report.archived == ["chg_changelog_p2026_01"]
        statuses = {p.name: p.status for p in await admin.list_partitions()}
        assert statuses["chg_changelog_p2026_01"] == "archived"

    @pytest.mark.asyncio()
    async def test_alert_rule_lifecycle(self, admin: ChangelogAdminService, backend: InMemoryAuditBackend) -> None:
        rule = AlertRule(name="deletes", predicate=AlertPredicate(operation="DELETE"), threshold=10)

        await admin.register_alert_rule(rule)
        with pytest.raises(ConflictError):
            await admin.register_alert_rule(rule)
        disabled = await admin.disable_alert_rule("deletes")
        enabled = await admin.enable_alert_rule("deletes")

        assert disabled.enabled is False
        assert enabled.enabled is True
        assert [r.name for r in await admin.list_alert_rules()] == ["deletes"]
        with pytest.raises(NotFoundError):
            await admin.enable_alert_rule("missing")

    @pytest.mark.asyncio()
    async def test_acknowledge_alert(
        self, admin: ChangelogAdminService, backend: InMemoryAuditBackend, clock: FakeClock
    ) -> None:
        rule = AlertRule(name="any", predicate=AlertPredicate(), threshold=0)
        event = await backend.repositories.alerts.record_firing(rule, T0, 1)
        clock.advance(minutes=3)

        acknowledged = await admin.acknowledge_alert(event.event_id, "oncall-1")

        assert acknowledged.acknowledged_by == "oncall-1"
        assert acknowledged.acknowledged_at == T0 + timedelta(minutes=3)
