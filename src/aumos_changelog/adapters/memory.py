"""In-memory audit backend: exclusion registry, alert store and unit of work.

Every repository here guards its state with a ``threading.Lock`` and performs
each operation atomically, so one shared unit of work serves all callers.
"""

from __future__ import annotations

import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

from aumos_changelog.adapters.archive import InMemoryArchive
from aumos_changelog.adapters.memory_queue import InMemoryCaptureQueue
from aumos_changelog.adapters.memory_store import InMemoryChangelogStore
from aumos_changelog.core.interfaces import IArchiveSink
from aumos_changelog.core.records import AlertEvent, AlertRule, ExclusionRule, to_utc
from aumos_changelog.errors import ConflictError, NotFoundError


class InMemoryExclusionRegistry:
    """Exclusion rules keyed by (entity, field)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: dict[tuple[str, str], ExclusionRule] = {}

    async def excluded_fields(self, entity: str) -> frozenset[str]:
        with self._lock:
            return frozenset(name for (owner, name) in self._rules if owner == entity)

    async def add(self, rule: ExclusionRule) -> ExclusionRule:
        with self._lock:
            return self._rules.setdefault((rule.entity, rule.field), rule)

    async def remove(self, entity: str, field: str) -> bool:
        with self._lock:
            return self._rules.pop((entity, field), None) is not None

    async def list_rules(self, entity: str | None = None) -> list[ExclusionRule]:
        with self._lock:
            rules = [rule for rule in self._rules.values() if entity is None or rule.entity == entity]
        return sorted(rules, key=lambda rule: (rule.entity, rule.field))


class InMemoryAlertStore:
    """Alert rules and events. Cooldown check and insert share one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: dict[str, AlertRule] = {}
        self._events: list[AlertEvent] = []

    async def add_rule(self, rule: AlertRule) -> AlertRule:
        with self._lock:
            if rule.name in self._rules:
                raise ConflictError(f"Alert rule {rule.name!r} already exists")
            self._rules[rule.name] = rule
        return rule

    async def get_rule(self, name: str) -> AlertRule:
        with self._lock:
            rule = self._rules.get(name)
        if rule is None:
            raise NotFoundError(resource="AlertRule", resource_id=name)
        return rule

    async def list_rules(self, enabled_only: bool = False) -> list[AlertRule]:
        with self._lock:
            rules = list(self._rules.values())
        return [rule for rule in rules if rule.enabled or not enabled_only]

    async def set_enabled(self, name: str, enabled: bool) -> AlertRule:
        with self._lock:
            rule = self._rules.get(name)
            if rule is None:
                raise NotFoundError(resource="AlertRule", resource_id=name)
            updated = rule.model_copy(update={"enabled": enabled})
            self._rules[name] = updated
        return updated

    async def record_firing(
        self, rule: AlertRule, fired_at: datetime, observed_value: float
    ) -> AlertEvent | None:
        fired_at = to_utc(fired_at)
        with self._lock:
            previous = [event for event in self._events if event.rule_name == rule.name]
            if previous:
                last = max(event.fired_at for event in previous)
                if abs(fired_at - last) < rule.cooldown:
                    return None
            event = AlertEvent(
                rule_name=rule.name,
                fired_at=fired_at,
                observed_value=observed_value,
                threshold=rule.threshold,
                severity=rule.severity,
            )
            self._events.append(event)
        return event

    async def list_events(
        self,
        start: datetime,
        end: datetime,
        rule_name: str | None = None,
        active_only: bool = False,
    ) -> list[AlertEvent]:
        start, end = to_utc(start), to_utc(end)
        with self._lock:
            events = [
                event
                for event in self._events
                if start <= event.fired_at < end
                and (rule_name is None or event.rule_name == rule_name)
                and (event.is_active or not active_only)
            ]
        return sorted(events, key=lambda event: event.fired_at, reverse=True)

    async def acknowledge(self, event_id: str, actor_id: str, at: datetime) -> AlertEvent:
        with self._lock:
            for index, event in enumerate(self._events):
                if event.event_id != event_id:
                    continue
                if not event.is_active:
                    return event
                updated = event.model_copy(
                    update={"acknowledged_at": to_utc(at), "acknowledged_by": actor_id}
                )
                self._events[index] = updated
                return updated
        raise NotFoundError(resource="AlertEvent", resource_id=event_id)


@dataclass
class InMemoryUnitOfWork:
    """Repositories of the in-memory backend."""

    changes: InMemoryChangelogStore
    queue: InMemoryCaptureQueue
    exclusions: InMemoryExclusionRegistry = field(default_factory=InMemoryExclusionRegistry)
    alerts: InMemoryAlertStore = field(default_factory=InMemoryAlertStore)


class InMemoryAuditBackend:
    """Backend whose units of work all share the same in-memory repositories.

    Args:
        archive: Cold namespace for archived partitions. Defaults to InMemoryArchive.
    """

    def __init__(self, archive: IArchiveSink | None = None) -> None:
        self.archive = archive if archive is not None else InMemoryArchive()
        store = InMemoryChangelogStore(archive=self.archive)
        self._uow = InMemoryUnitOfWork(changes=store, queue=InMemoryCaptureQueue(store))

    @property
    def repositories(self) -> InMemoryUnitOfWork:
        return self._uow

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryUnitOfWork]:
        yield self._uow
