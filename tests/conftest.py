"""Test fixtures for aumos-changelog.

Provides:
- clock: A controllable UTC clock shared by the primary store and engines
- context: A CaptureContext with deterministic actor/tenant/request values
- backend: A fresh InMemoryAuditBackend
- interceptor: A sync, strict CaptureInterceptor tracking ``accounts``
- primary_store: An InMemoryPrimaryStore wired to the interceptor and backend
- make_change: Factory for PendingChange objects
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from aumos_changelog.adapters.memory import InMemoryAuditBackend
from aumos_changelog.adapters.primary_store import InMemoryPrimaryStore
from aumos_changelog.core.interceptor import CaptureInterceptor
from aumos_changelog.core.records import CaptureContext, PendingChange

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_change(
    operation: str = "INSERT",
    *,
    entity: str = "accounts",
    row_identity: str = "1",
    old: dict[str, Any] | None = None,
    new: dict[str, Any] | None = None,
    changed: set[str] | None = None,
    redacted: set[str] | None = None,
    captured_at: datetime = T0,
    changed_by: str = "app_rw",
    actor_id: str | None = "user-1",
    tenant_id: str | None = "tenant-1",
    transaction_id: int = 1,
    sequence: int = 0,
) -> PendingChange:
    """Build a PendingChange with sensible defaults for the operation."""
    if operation in ("INSERT", "UPDATE") and new is None:
        new = {"id": int(row_identity), "name": "Alice"}
    if operation in ("UPDATE", "DELETE") and old is None:
        old = {"id": int(row_identity), "name": "Alice"}
    if operation == "UPDATE" and changed is None:
        changed = {key for key in (old or {}).keys() | (new or {}).keys() if (old or {}).get(key) != (new or {}).get(key)}
    return PendingChange(
        entity=entity,
        operation=operation,  # type: ignore[arg-type]
        row_identity=row_identity,
        old_snapshot=old,
        new_snapshot=new,
        changed_fields=frozenset(changed) if operation == "UPDATE" else None,
        redacted_fields=frozenset(redacted or ()),
        captured_at=captured_at,
        changed_by=changed_by,
        actor_id=actor_id,
        tenant_id=tenant_id,
        transaction_id=transaction_id,
        sequence=sequence,
    )


@pytest.fixture()
def clock() -> FakeClock:
    """Return a clock starting at 2026-03-10 12:00 UTC."""
    return FakeClock()


@pytest.fixture()
def context() -> CaptureContext:
    """Return a capture context with deterministic identity values."""
    return CaptureContext(
        actor_id="user-1",
        tenant_id="tenant-1",
        request_id="req-1",
        client_address="10.0.0.1",
    )


@pytest.fixture()
def backend() -> InMemoryAuditBackend:
    """Return an empty in-memory audit backend."""
    return InMemoryAuditBackend()


@pytest.fixture()
def interceptor() -> CaptureInterceptor:
    """Return a synchronous, strict interceptor tracking ``accounts``."""
    return CaptureInterceptor(mode="sync", strict=True, tracked_entities=["accounts"])


@pytest.fixture()
def primary_store(
    interceptor: CaptureInterceptor,
    backend: InMemoryAuditBackend,
    clock: FakeClock,
) -> InMemoryPrimaryStore:
    """Return a primary store with the ``accounts`` and ``sessions`` entities registered."""
    store = InMemoryPrimaryStore(interceptor, backend, clock=clock)
    store.register_entity("accounts")
    store.register_entity("sessions", key_field="token")
    return store


@pytest.fixture(name="make_change")
def make_change_fixture() -> Callable[..., PendingChange]:
    """Expose make_change to tests as a fixture."""
    return make_change
