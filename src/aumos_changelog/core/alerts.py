"""Cooldown-gated alert evaluation over changelog aggregates.

On each cycle every enabled rule observes its aggregate over the trailing
window, compares it to the threshold and, when triggered, asks the alert store
to record a firing. The store performs the cooldown check and the insert as
one step, so however many cycles (or evaluator instances) observe a breach,
at most one event per cooldown window is created. A failing rule is reported
and never stops the rest of the cycle.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from aumos_changelog.core.interfaces import IAuditBackend, IChangelogStore
from aumos_changelog.core.records import AlertEvent, AlertPredicate, AlertRule, to_utc, utc_now
from aumos_changelog.errors import AlertEvaluationError
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)


async def observe(store: IChangelogStore, predicate: AlertPredicate, now: datetime) -> float:
    """Compute a predicate's aggregate over ``[now - window, now)``."""
    counts = await store.aggregate(
        now - predicate.window,
        now,
        group_by=predicate.group_by,
        entity=predicate.entity,
        operation=predicate.operation,
    )
    return float(max(counts.values(), default=0))


@dataclass
class EvaluationReport:
    """Outcome of one evaluation cycle."""

    evaluated_at: datetime
    rules_evaluated: int = 0
    fired: list[AlertEvent] = field(default_factory=list)
    suppressed: list[str] = field(default_factory=list)
    errors: list[AlertEvaluationError] = field(default_factory=list)


class AlertEvaluator:
    """Evaluates every enabled alert rule against the changelog.

    Args:
        backend: Audit backend providing the changelog and alert store.
        clock: Source of the current UTC time.
    """

    def __init__(self, backend: IAuditBackend, clock: Callable[[], datetime] = utc_now) -> None:
        self._backend = backend
        self._clock = clock

    async def evaluate_once(self, now: datetime | None = None) -> EvaluationReport:
        """Run one evaluation cycle.

        Args:
            now: Evaluation time. Defaults to the clock.

        Returns:
            The cycle report.
        """
        now = to_utc(now) if now is not None else self._clock()
        report = EvaluationReport(evaluated_at=now)

        async with self._backend.unit_of_work() as uow:
            rules = await uow.alerts.list_rules(enabled_only=True)

        for rule in rules:
            report.rules_evaluated += 1
            try:
                triggered, event = await self._evaluate_rule(rule, now)
            except Exception as exc:
                error = AlertEvaluationError(rule.name, str(exc))
                report.errors.append(error)
                logger.error("Alert rule evaluation failed", rule=rule.name, error=str(exc))
                continue

            if event is not None:
                report.fired.append(event)
            elif triggered:
                report.suppressed.append(rule.name)

        if report.fired or report.errors:
            logger.info(
                "Alert evaluation cycle complete",
                rules_evaluated=report.rules_evaluated,
                fired=[event.rule_name for event in report.fired],
                suppressed=report.suppressed,
                errors=len(report.errors),
            )
        return report

    async def _evaluate_rule(self, rule: AlertRule, now: datetime) -> tuple[bool, AlertEvent | None]:
        """Return whether the rule triggered and the event it created, if any."""
        async with self._backend.unit_of_work() as uow:
            observed = await observe(uow.changes, rule.predicate, now)
            if not rule.is_triggered(observed):
                return False, None

            event = await uow.alerts.record_firing(rule, now, observed)
            if event is None:
                logger.debug("Alert within cooldown", rule=rule.name, observed=observed)
                return True, None

        logger.warning(
            "Alert fired",
            rule=rule.name,
            severity=rule.severity,
            observed=observed,
            threshold=rule.threshold,
            comparator=rule.comparator,
        )
        return True, event
