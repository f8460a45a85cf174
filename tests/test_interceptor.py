"""Tests for the capture interceptor driven through the in-memory primary store.

Tests verify:
- Insert/update/delete capture with exact changed_fields
- No-op and redacted-only updates are suppressed
- Rolled-back transactions leave neither the row nor its record
- Strict capture aborts the mutation; lenient capture lets it proceed
- Multi-row transactions share transaction_id with increasing sequence
- Async mode enqueues instead of writing the changelog
- Every record names the principal that performed the write
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

from aumos_changelog.adapters.memory import InMemoryAuditBackend
from aumos_changelog.adapters.primary_store import InMemoryPrimaryStore
from aumos_changelog.core.interceptor import CaptureInterceptor
from aumos_changelog.core.records import CaptureContext, ExclusionRule
from aumos_changelog.errors import CaptureFailure

from .conftest import T0, FakeClock


async def _history(backend: InMemoryAuditBackend, row_identity: str = "1") -> list[Any]:
    return await backend.repositories.changes.history("accounts", row_identity, newest_first=False)


class TestCaptureScenarios:
    @pytest.mark.asyncio()
    async def test_insert_records_full_new_snapshot(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend, context: CaptureContext
    ) -> None:
        """An INSERT produces one record with new_snapshot only."""
        async with primary_store.transaction(context) as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice", "status": "new"})

        [record] = await _history(backend)
        assert record.operation == "INSERT"
        assert record.old_snapshot is None
        assert record.new_snapshot == {"id": 1, "name": "Alice", "status": "new"}
        assert record.changed_fields is None
        assert record.actor_id == "user-1"
        assert record.tenant_id == "tenant-1"
        assert record.request_id == "req-1"
        assert record.client_address == "10.0.0.1"
        assert record.captured_at == T0
        assert record.changed_by == "aumos-changelog"

    @pytest.mark.asyncio()
    async def test_changed_by_is_recorded_without_an_actor(
        self, interceptor: CaptureInterceptor, backend: InMemoryAuditBackend, clock: FakeClock
    ) -> None:
        """Writes outside any request still name the principal that made them."""
        store = InMemoryPrimaryStore(interceptor, backend, clock=clock, principal="billing_svc")
        store.register_entity("accounts")

        async with store.transaction(CaptureContext()) as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice"})
            await tx.update("accounts", "1", {"name": "Alicia"})

        records = await _history(backend)
        assert [record.actor_id for record in records] == [None, None]
        assert [record.changed_by for record in records] == ["billing_svc", "billing_svc"]

    @pytest.mark.asyncio()
    async def test_update_records_only_changed_fields(
        self,
        primary_store: InMemoryPrimaryStore,
        backend: InMemoryAuditBackend,
        clock: FakeClock,
    ) -> None:
        """An UPDATE of one field records exactly that field as changed."""
        async with primary_store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice", "status": "new"})
        clock.advance(minutes=1)
        async with primary_store.transaction() as tx:
            await tx.update("accounts", "1", {"status": "active"})

        insert, update = await _history(backend)
        assert update.operation == "UPDATE"
        assert update.changed_fields == {"status"}
        assert update.old_snapshot == {"id": 1, "name": "Alice", "status": "new"}
        assert update.new_snapshot == {"id": 1, "name": "Alice", "status": "active"}
        assert update.id > insert.id

    @pytest.mark.asyncio()
    async def test_noop_update_is_not_recorded(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend
    ) -> None:
        """Writing identical values produces no record."""
        async with primary_store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice", "note": None})
        async with primary_store.transaction() as tx:
            await tx.update("accounts", "1", {"name": "Alice", "note": None})

        records = await _history(backend)
        assert [record.operation for record in records] == ["INSERT"]

    @pytest.mark.asyncio()
    async def test_update_of_only_excluded_field_is_suppressed(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend
    ) -> None:
        """Touching only password_hash records nothing, and the value never reaches the changelog."""
        await backend.repositories.exclusions.add(
            ExclusionRule(entity="accounts", field="password_hash", reason="credential")
        )
        async with primary_store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice", "password_hash": "h1"})
        async with primary_store.transaction() as tx:
            await tx.update("accounts", "1", {"password_hash": "h2"})

        [record] = await _history(backend)
        assert record.operation == "INSERT"
        assert record.new_snapshot == {"id": 1, "name": "Alice"}
        assert record.redacted_fields == {"password_hash"}
        assert (await primary_store.fetch_current("accounts", "1"))["password_hash"] == "h2"

    @pytest.mark.asyncio()
    async def test_redacted_only_update_recorded_when_not_suppressed(
        self, backend: InMemoryAuditBackend, clock: FakeClock
    ) -> None:
        """With suppression off the UPDATE is kept with an empty changed_fields set."""
        interceptor = CaptureInterceptor(
            tracked_entities=["accounts"], suppress_redacted_only_updates=False
        )
        store = InMemoryPrimaryStore(interceptor, backend, clock=clock)
        store.register_entity("accounts")
        await backend.repositories.exclusions.add(
            ExclusionRule(entity="accounts", field="password_hash", reason="credential")
        )
        async with store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "password_hash": "h1"})
        async with store.transaction() as tx:
            await tx.update("accounts", "1", {"password_hash": "h2"})

        _, update = await _history(backend)
        assert update.changed_fields == frozenset()
        assert update.redacted_fields == {"password_hash"}
        assert "password_hash" not in update.new_snapshot

    @pytest.mark.asyncio()
    async def test_delete_records_old_snapshot(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend
    ) -> None:
        async with primary_store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice"})
        async with primary_store.transaction() as tx:
            await tx.delete("accounts", "1")

        _, delete = await _history(backend)
        assert delete.operation == "DELETE"
        assert delete.old_snapshot == {"id": 1, "name": "Alice"}
        assert delete.new_snapshot is None
        assert await primary_store.fetch_current("accounts", "1") is None

    @pytest.mark.asyncio()
    async def test_untracked_entity_is_not_captured(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend
    ) -> None:
        async with primary_store.transaction() as tx:
            await tx.insert("sessions", {"token": "abc", "user": 1})

        assert await backend.repositories.changes.history("sessions", "abc") == []
        assert await primary_store.fetch_current("sessions", "abc") == {"token": "abc", "user": 1}


class TestTransactions:
    @pytest.mark.asyncio()
    async def test_rollback_discards_row_and_record(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend
    ) -> None:
        """An exception inside the transaction leaves no row and no change record."""
        with pytest.raises(RuntimeError):
            async with primary_store.transaction() as tx:
                await tx.insert("accounts", {"id": 1, "name": "Alice"})
                raise RuntimeError("business rule violated")

        assert await primary_store.fetch_current("accounts", "1") is None
        assert await _history(backend) == []

    @pytest.mark.asyncio()
    async def test_multi_row_transaction_shares_transaction_id(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend
    ) -> None:
        """Changes of one transaction share transaction_id and captured_at, ordered by sequence."""
        async with primary_store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice"})
            await tx.insert("accounts", {"id": 2, "name": "Bob"})
            await tx.update("accounts", "1", {"name": "Alicia"})

        records = await backend.repositories.changes.by_transaction(1)
        assert [record.sequence for record in records] == [0, 1, 2]
        assert {record.transaction_id for record in records} == {1}
        assert {record.captured_at for record in records} == {T0}
        assert records[2].old_snapshot == {"id": 1, "name": "Alice"}
        assert records[2].new_snapshot == {"id": 1, "name": "Alicia"}

    @pytest.mark.asyncio()
    async def test_transaction_ids_increase(
        self, primary_store: InMemoryPrimaryStore, backend: InMemoryAuditBackend
    ) -> None:
        async with primary_store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice"})
        async with primary_store.transaction() as tx:
            await tx.update("accounts", "1", {"name": "Alicia"})

        insert, update = await _history(backend)
        assert update.transaction_id > insert.transaction_id


class TestFailurePolicy:
    @pytest.mark.asyncio()
    async def test_strict_capture_failure_aborts_mutation(
        self,
        primary_store: InMemoryPrimaryStore,
        backend: InMemoryAuditBackend,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A failed audit write in strict mode raises CaptureFailure and keeps the row unchanged."""
        monkeypatch.setattr(
            backend.repositories.changes, "append", AsyncMock(side_effect=OSError("disk full"))
        )

        with pytest.raises(CaptureFailure):
            async with primary_store.transaction() as tx:
                await tx.insert("accounts", {"id": 1, "name": "Alice"})

        assert await primary_store.fetch_current("accounts", "1") is None

    @pytest.mark.asyncio()
    async def test_strict_redaction_lookup_failure_aborts_mutation(
        self,
        primary_store: InMemoryPrimaryStore,
        backend: InMemoryAuditBackend,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(
            backend.repositories.exclusions,
            "excluded_fields",
            AsyncMock(side_effect=RuntimeError("registry unavailable")),
        )

        with pytest.raises(CaptureFailure) as exc_info:
            async with primary_store.transaction() as tx:
                await tx.insert("accounts", {"id": 1, "name": "Alice"})

        assert exc_info.value.entity == "accounts"
        assert exc_info.value.operation == "INSERT"
        assert await primary_store.fetch_current("accounts", "1") is None

    @pytest.mark.asyncio()
    async def test_lenient_capture_failure_lets_mutation_proceed(
        self, backend: InMemoryAuditBackend, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Lenient mode logs the failure, commits the row and writes no record."""
        interceptor = CaptureInterceptor(strict=False, tracked_entities=["accounts"])
        store = InMemoryPrimaryStore(interceptor, backend, clock=clock)
        store.register_entity("accounts")
        monkeypatch.setattr(
            backend.repositories.changes, "append", AsyncMock(side_effect=OSError("disk full"))
        )

        async with store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice"})

        assert await store.fetch_current("accounts", "1") == {"id": 1, "name": "Alice"}
        monkeypatch.undo()
        assert await _history(backend) == []


class TestAsyncMode:
    @pytest.mark.asyncio()
    async def test_async_capture_enqueues_instead_of_writing(
        self, backend: InMemoryAuditBackend, clock: FakeClock
    ) -> None:
        interceptor = CaptureInterceptor(mode="async", tracked_entities=["accounts"])
        store = InMemoryPrimaryStore(interceptor, backend, clock=clock)
        store.register_entity("accounts")

        async with store.transaction() as tx:
            await tx.insert("accounts", {"id": 1, "name": "Alice"})

        assert await _history(backend) == []
        assert await backend.repositories.queue.depth() == 1
        [pending] = await backend.repositories.queue.pending("accounts", "1")
        assert pending.operation == "INSERT"
        assert pending.new_snapshot == {"id": 1, "name": "Alice"}
        assert pending.changed_by == "aumos-changelog"

    @pytest.mark.asyncio()
    async def test_async_rollback_enqueues_nothing(
        self, backend: InMemoryAuditBackend, clock: FakeClock
    ) -> None:
        interceptor = CaptureInterceptor(mode="async", tracked_entities=["accounts"])
        store = InMemoryPrimaryStore(interceptor, backend, clock=clock)
        store.register_entity("accounts")

        with pytest.raises(ValueError):
            async with store.transaction() as tx:
                await tx.insert("accounts", {"id": 1, "name": "Alice"})
                raise ValueError("abort")

        assert await backend.repositories.queue.depth() == 0


class TestCaptureToggles:
    @pytest.mark.asyncio()
    async def test_enable_and_disable_capture(
        self,
        interceptor: CaptureInterceptor,
        primary_store: InMemoryPrimaryStore,
        backend: InMemoryAuditBackend,
    ) -> None:
        interceptor.enable_capture("sessions")
        async with primary_store.transaction() as tx:
            await tx.insert("sessions", {"token": "a"})
        interceptor.disable_capture("sessions")
        async with primary_store.transaction() as tx:
            await tx.insert("sessions", {"token": "b"})

        assert len(await backend.repositories.changes.history("sessions", "a")) == 1
        assert await backend.repositories.changes.history("sessions", "b") == []
        assert interceptor.tracked_entities == {"accounts"}
