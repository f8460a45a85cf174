"""Tests for alert rules, the alert store and the AlertEvaluator.

Tests verify:
- Per-actor change thresholds fire exactly once per cooldown window
- Cooldown expiry allows the next firing
- A failing rule does not stop the others
- Disabled rules are skipped
- Acknowledgement is idempotent
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from aumos_changelog.adapters.memory import InMemoryAlertStore, InMemoryAuditBackend
from aumos_changelog.core.alerts import AlertEvaluator, observe
from aumos_changelog.core.records import AlertPredicate, AlertRule
from aumos_changelog.errors import ConflictError, NotFoundError

from .conftest import T0, make_change


def _actor_rule(name: str = "bulk-actor", cooldown: timedelta = timedelta(hours=1)) -> AlertRule:
    return AlertRule(
        name=name,
        predicate=AlertPredicate(metric="max_changes_per_actor", window=timedelta(hours=1)),
        threshold=100,
        comparator=">",
        severity="critical",
        cooldown=cooldown,
    )


async def _record_changes(backend: InMemoryAuditBackend, count: int, start_tx: int = 1) -> None:
    await backend.repositories.changes.append(
        [
            make_change(row_identity=str(tx), transaction_id=tx, captured_at=T0 + timedelta(seconds=tx))
            for tx in range(start_tx, start_tx + count)
        ]
    )


class TestAlertEvaluator:
    @pytest.mark.asyncio()
    async def test_threshold_breach_fires_once_within_cooldown(self, backend: InMemoryAuditBackend) -> None:
        """The 101st change in the hour fires one event; the 102nd fires none more."""
        await backend.repositories.alerts.add_rule(_actor_rule())
        evaluator = AlertEvaluator(backend)

        await _record_changes(backend, 100)
        quiet = await evaluator.evaluate_once(T0 + timedelta(minutes=10))
        await _record_changes(backend, 1, start_tx=101)
        fired = await evaluator.evaluate_once(T0 + timedelta(minutes=10))
        await _record_changes(backend, 1, start_tx=102)
        suppressed = await evaluator.evaluate_once(T0 + timedelta(minutes=11))

        assert quiet.fired == []
        [event] = fired.fired
        assert event.rule_name == "bulk-actor"
        assert event.observed_value == 101
        assert event.threshold == 100
        assert event.severity == "critical"
        assert suppressed.fired == []
        assert suppressed.suppressed == ["bulk-actor"]
        events = await backend.repositories.alerts.list_events(T0, T0 + timedelta(days=1))
        assert len(events) == 1

    @pytest.mark.asyncio()
    async def test_fires_again_after_cooldown(self, backend: InMemoryAuditBackend) -> None:
        await backend.repositories.alerts.add_rule(
            AlertRule(
                name="any-change",
                predicate=AlertPredicate(window=timedelta(days=1)),
                threshold=0,
                cooldown=timedelta(minutes=30),
            )
        )
        await _record_changes(backend, 1)
        evaluator = AlertEvaluator(backend)

        first = await evaluator.evaluate_once(T0 + timedelta(minutes=1))
        within = await evaluator.evaluate_once(T0 + timedelta(minutes=30))
        after = await evaluator.evaluate_once(T0 + timedelta(minutes=31))

        assert len(first.fired) == 1
        assert within.fired == []
        assert len(after.fired) == 1

    @pytest.mark.asyncio()
    async def test_failing_rule_does_not_stop_the_cycle(
        self, backend: InMemoryAuditBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await backend.repositories.alerts.add_rule(_actor_rule("broken"))
        await backend.repositories.alerts.add_rule(
            AlertRule(name="healthy", predicate=AlertPredicate(), threshold=0)
        )
        await _record_changes(backend, 1)
        real_aggregate = backend.repositories.changes.aggregate

        async def aggregate(start, end, group_by=None, entity=None, operation=None):
            if group_by == "actor_id":
                raise RuntimeError("aggregate failed")
            return await real_aggregate(start, end, group_by=group_by, entity=entity, operation=operation)

        monkeypatch.setattr(backend.repositories.changes, "aggregate", aggregate)

        report = await AlertEvaluator(backend).evaluate_once(T0 + timedelta(minutes=1))

        assert report.rules_evaluated == 2
        assert [event.rule_name for event in report.fired] == ["healthy"]
        [error] = report.errors
        assert error.rule_name == "broken"
        assert "aggregate failed" in error.reason

    @pytest.mark.asyncio()
    async def test_disabled_rules_are_skipped(self, backend: InMemoryAuditBackend) -> None:
        alerts = backend.repositories.alerts
        await alerts.add_rule(AlertRule(name="off", predicate=AlertPredicate(), threshold=0, enabled=False))
        await _record_changes(backend, 1)

        report = await AlertEvaluator(backend).evaluate_once(T0 + timedelta(minutes=1))

        assert report.rules_evaluated == 0
        assert report.fired == []

    @pytest.mark.asyncio()
    async def test_predicate_filters_entity_and_operation(self, backend: InMemoryAuditBackend) -> None:
        await backend.repositories.changes.append(
            [
                make_change("DELETE", row_identity="1", transaction_id=1),
                make_change("INSERT", row_identity="2", transaction_id=2),
                make_change("DELETE", entity="orders", row_identity="3", transaction_id=3),
            ]
        )
        predicate = AlertPredicate(entity="accounts", operation="DELETE")

        observed = await observe(backend.repositories.changes, predicate, T0 + timedelta(minutes=1))

        assert observed == 1.0

    @pytest.mark.asyncio()
    async def test_observe_with_no_changes_is_zero(self, backend: InMemoryAuditBackend) -> None:
        predicate = AlertPredicate(metric="max_changes_per_tenant")

        assert await observe(backend.repositories.changes, predicate, T0) == 0.0


class TestAlertStore:
    @pytest.mark.asyncio()
    async def test_duplicate_rule_conflicts(self) -> None:
        store = InMemoryAlertStore()
        await store.add_rule(_actor_rule())

        with pytest.raises(ConflictError):
            await store.add_rule(_actor_rule())

    @pytest.mark.asyncio()
    async def test_set_enabled_and_unknown_rule(self) -> None:
        store = InMemoryAlertStore()
        await store.add_rule(_actor_rule())

        disabled = await store.set_enabled("bulk-actor", False)

        assert disabled.enabled is False
        assert await store.list_rules(enabled_only=True) == []
        with pytest.raises(NotFoundError):
            await store.set_enabled("missing", True)
        with pytest.raises(NotFoundError):
            await store.get_rule("missing")

    @pytest.mark.asyncio()
    async def test_acknowledge_is_idempotent(self) -> None:
        store = InMemoryAlertStore()
        rule = _actor_rule()
        event = await store.record_firing(rule, T0, 150)
        assert event is not None

        first = await store.acknowledge(event.event_id, "oncall-1", T0 + timedelta(minutes=5))
        second = await store.acknowledge(event.event_id, "oncall-2", T0 + timedelta(minutes=9))

        assert first.acknowledged_by == "oncall-1"
        assert second == first
        assert await store.list_events(T0, T0 + timedelta(hours=1), active_only=True) == []
        with pytest.raises(NotFoundError):
            await store.acknowledge("no-such-event", "oncall-1", T0)

    @pytest.mark.asyncio()
    async def test_list_events_newest_first_in_half_open_range(self) -> None:
        store = InMemoryAlertStore()
        rule = _actor_rule(cooldown=timedelta(0))
        for minutes in (0, 10, 20):
            await store.record_firing(rule, T0 + timedelta(minutes=minutes), 101)

        events = await store.list_events(T0, T0 + timedelta(minutes=20))

        assert [event.fired_at for event in events] == [T0 + timedelta(minutes=10), T0]


@pytest.mark.asyncio()
async def test_record_firing_checks_cooldown_against_latest_event() -> None:
    store = InMemoryAlertStore()
    rule = _actor_rule()
    assert await store.record_firing(rule, T0, 101) is not None
    assert await store.record_firing(rule, T0 + timedelta(minutes=59), 140) is None
    assert await store.record_firing(rule, T0 + timedelta(hours=1), 140) is not None
