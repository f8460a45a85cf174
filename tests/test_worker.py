"""Tests for the capture queue and QueueWorker.

Tests verify:
- A drained queue yields exactly one change record per entry
- Concurrent workers never promote the same entry twice, on threads or interleaved
- A scheduled cycle promotes at most one batch
- Claims expire and become claimable again
- A promote after the lease expired is a lost claim, not a duplicate
- Failed promotion releases the claims outside the failed unit of work
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from aumos_changelog.adapters.memory import InMemoryAuditBackend
from aumos_changelog.core.records import QueueEntry
from aumos_changelog.core.worker import QueueWorker

from .conftest import T0, FakeClock, make_change


async def _enqueue(backend: InMemoryAuditBackend, count: int) -> None:
    await backend.repositories.queue.enqueue(
        [
            make_change(row_identity=str(index), transaction_id=index)
            for index in range(1, count + 1)
        ]
    )


async def _all_records(backend: InMemoryAuditBackend, count: int) -> list:
    records = []
    for index in range(1, count + 1):
        records.extend(await backend.repositories.changes.history("accounts", str(index)))
    return records


class TestQueueWorker:
    @pytest.mark.asyncio()
    async def test_drain_promotes_every_entry(self, backend: InMemoryAuditBackend) -> None:
        await _enqueue(backend, 5)
        worker = QueueWorker(backend, worker_id="w1", batch_size=2)

        promoted = await worker.drain()

        assert promoted == 5
        assert await backend.repositories.queue.depth() == 0
        records = await _all_records(backend, 5)
        assert sorted(record.row_identity for record in records) == ["1", "2", "3", "4", "5"]

    @pytest.mark.asyncio()
    async def test_run_once_on_empty_queue(self, backend: InMemoryAuditBackend) -> None:
        assert await QueueWorker(backend).run_once() == 0

    @pytest.mark.asyncio()
    async def test_drain_respects_max_batches(self, backend: InMemoryAuditBackend) -> None:
        await _enqueue(backend, 5)
        worker = QueueWorker(backend, worker_id="w1", batch_size=2)

        assert await worker.drain(max_batches=1) == 2
        assert await backend.repositories.queue.depth() == 3

    @pytest.mark.asyncio()
    async def test_concurrent_workers_promote_each_entry_once(self, backend: InMemoryAuditBackend) -> None:
        """Four workers on separate threads draining 50 entries create exactly 50 change records."""
        await _enqueue(backend, 50)
        workers = [QueueWorker(backend, worker_id=f"w{i}", batch_size=3) for i in range(4)]

        totals = await asyncio.gather(
            *(asyncio.to_thread(asyncio.run, worker.drain()) for worker in workers)
        )

        assert sum(totals) == 50
        records = await _all_records(backend, 50)
        assert len(records) == 50
        assert len({record.id for record in records}) == 50

    @pytest.mark.asyncio()
    async def test_workers_interleaving_between_claim_and_promote(
        self, backend: InMemoryAuditBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Every worker yields after claiming, so the others claim while its batch is held."""
        await _enqueue(backend, 20)
        queue = backend.repositories.queue
        claim = queue.claim
        batches: list[tuple[str, list[int]]] = []

        async def claim_then_yield(worker_id, limit, lease, now):  # type: ignore[no-untyped-def]
            entries = await claim(worker_id, limit, lease, now)
            batches.append((worker_id, [entry.entry_id for entry in entries]))
            await asyncio.sleep(0)
            return entries

        monkeypatch.setattr(queue, "claim", claim_then_yield)
        workers = [QueueWorker(backend, worker_id=f"w{i}", batch_size=2) for i in range(3)]

        totals = await asyncio.gather(*(worker.drain() for worker in workers))

        assert sum(totals) == 20
        assert all(total > 0 for total in totals)
        claimed = [entry_id for _, ids in batches for entry_id in ids]
        assert sorted(claimed) == list(range(1, 21))
        assert len(await _all_records(backend, 20)) == 20

    @pytest.mark.asyncio()
    async def test_scheduled_cycle_promotes_at_most_one_batch(self, backend: InMemoryAuditBackend) -> None:
        await _enqueue(backend, 30)
        worker = QueueWorker(backend, worker_id="w1", batch_size=5)

        task = worker.run_forever(interval_seconds=3600)
        while task.cycles < 1:
            await asyncio.sleep(0.01)
        await task.stop()

        assert task.cycles == 1
        assert await backend.repositories.queue.depth() == 25

    @pytest.mark.asyncio()
    async def test_run_forever_promotes_on_interval(self, backend: InMemoryAuditBackend) -> None:
        await _enqueue(backend, 3)
        worker = QueueWorker(backend, worker_id="w1")

        task = worker.run_forever(interval_seconds=0.01)
        while task.cycles < 1:
            await asyncio.sleep(0.01)
        await task.stop()

        assert await backend.repositories.queue.depth() == 0
        assert not task.running

    def test_batch_size_must_be_positive(self, backend: InMemoryAuditBackend) -> None:
        with pytest.raises(ValueError):
            QueueWorker(backend, batch_size=0)

    @pytest.mark.asyncio()
    async def test_failed_promotion_releases_claims(
        self, backend: InMemoryAuditBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await _enqueue(backend, 2)
        queue = backend.repositories.queue
        monkeypatch.setattr(queue, "promote", AsyncMock(side_effect=RuntimeError("store down")))
        worker = QueueWorker(backend, worker_id="w1")

        with pytest.raises(RuntimeError):
            await worker.run_once()

        reclaimed = await queue.claim("w2", 10, timedelta(seconds=30), T0)
        assert len(reclaimed) == 2

    @pytest.mark.asyncio()
    async def test_failed_promotion_releases_claims_in_a_fresh_unit_of_work(self) -> None:
        """The unit of work that failed is never used again after it rolled back."""
        entries = [QueueEntry(entry_id=entry_id, change=make_change(), enqueued_at=T0) for entry_id in (1, 2)]
        failed, fresh = MagicMock(), MagicMock()
        failed.queue = AsyncMock()
        failed.queue.claim.return_value = entries
        failed.queue.promote.side_effect = RuntimeError("connection lost")
        fresh.queue = AsyncMock()
        units = iter([failed, fresh])
        rolled_back: list[bool] = []

        class _Backend:
            @asynccontextmanager
            async def unit_of_work(self):  # type: ignore[no-untyped-def]
                try:
                    yield next(units)
                except Exception:
                    rolled_back.append(True)
                    raise

        with pytest.raises(RuntimeError):
            await QueueWorker(_Backend(), worker_id="w1").run_once()

        assert rolled_back == [True]
        failed.queue.release.assert_not_awaited()
        fresh.queue.release.assert_awaited_once_with("w1", [1, 2])


class TestClaims:
    @pytest.mark.asyncio()
    async def test_claimed_entries_are_invisible_to_other_workers(self, backend: InMemoryAuditBackend) -> None:
        await _enqueue(backend, 3)
        queue = backend.repositories.queue
        lease = timedelta(seconds=30)

        first = await queue.claim("w1", 2, lease, T0)
        second = await queue.claim("w2", 10, lease, T0)

        assert len(first) == 2
        assert [entry.entry_id for entry in second] == [3]
        assert all(entry.claimed_by == "w1" for entry in first)

    @pytest.mark.asyncio()
    async def test_expired_claim_is_claimable_again(self, backend: InMemoryAuditBackend) -> None:
        await _enqueue(backend, 1)
        queue = backend.repositories.queue
        lease = timedelta(seconds=30)

        await queue.claim("w1", 10, lease, T0)
        assert await queue.claim("w2", 10, lease, T0 + timedelta(seconds=10)) == []
        retaken = await queue.claim("w2", 10, lease, T0 + timedelta(seconds=30))

        assert [entry.claimed_by for entry in retaken] == ["w2"]

    @pytest.mark.asyncio()
    async def test_promote_after_lease_loss_creates_no_duplicate(self, backend: InMemoryAuditBackend) -> None:
        """The original claimant's late promote loses; the new owner promotes once."""
        await _enqueue(backend, 1)
        queue = backend.repositories.queue
        lease = timedelta(seconds=30)
        late = T0 + timedelta(seconds=31)

        stale = await queue.claim("w1", 10, lease, T0)
        fresh = await queue.claim("w2", 10, lease, late)

        assert await queue.promote("w1", stale, late) == []
        promoted = await queue.promote("w2", fresh, late)

        assert len(promoted) == 1
        assert await queue.depth() == 0
        assert len(await backend.repositories.changes.history("accounts", "1")) == 1

    @pytest.mark.asyncio()
    async def test_release_only_affects_own_claims(self, backend: InMemoryAuditBackend) -> None:
        await _enqueue(backend, 1)
        queue = backend.repositories.queue
        lease = timedelta(seconds=30)
        [entry] = await queue.claim("w1", 10, lease, T0)

        await queue.release("w2", [entry.entry_id])
        assert await queue.claim("w2", 10, lease, T0) == []

        await queue.release("w1", [entry.entry_id])
        assert len(await queue.claim("w2", 10, lease, T0)) == 1

    @pytest.mark.asyncio()
    async def test_worker_with_expired_clock_loses_claims(self, backend: InMemoryAuditBackend) -> None:
        """A worker whose clock jumps past the lease between claim and promote promotes nothing."""
        await _enqueue(backend, 1)
        clock = FakeClock()
        times = iter([clock.now, clock.now + timedelta(minutes=5)])
        worker = QueueWorker(backend, worker_id="w1", lease=timedelta(seconds=30), clock=lambda: next(times))

        assert await worker.run_once() == 0
        assert await backend.repositories.queue.depth() == 1
