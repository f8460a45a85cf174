"""Queue worker that promotes pending changes into the changelog.

Each cycle claims up to ``batch_size`` entries and promotes them in the same
unit of work. Several workers may drain one queue concurrently: claims keep
each entry invisible to the others, and a promote only succeeds for entries
the worker still owns, so every entry becomes exactly one change record.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from aumos_changelog.core.interfaces import IAuditBackend
from aumos_changelog.core.records import QueueEntry, utc_now
from aumos_changelog.core.scheduler import PeriodicTask
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)


class QueueWorker:
    """Drains the capture queue in bounded batches.

    Args:
        backend: Audit backend providing the queue and changelog.
        worker_id: Identity used for claims. Generated if omitted.
        batch_size: Maximum entries claimed per cycle.
        lease: How long a claim stays exclusive.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        backend: IAuditBackend,
        worker_id: str | None = None,
        batch_size: int = 500,
        lease: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._backend = backend
        self._worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"
        self._batch_size = batch_size
        self._lease = lease
        self._clock = clock

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run_once(self) -> int:
        """Claim and promote one batch of at most ``batch_size`` entries.

        If promotion fails, the unit of work is rolled back and the claims are
        released in a fresh one, so the failed session is never reused.

        Returns:
            Number of change records created.
        """
        entries: list[QueueEntry] = []
        try:
            async with self._backend.unit_of_work() as uow:
                entries = await uow.queue.claim(
                    self._worker_id, self._batch_size, self._lease, self._clock()
                )
                if not entries:
                    return 0
                records = await uow.queue.promote(self._worker_id, entries, self._clock())
                depth = await uow.queue.depth()
        except Exception:
            if entries:
                async with self._backend.unit_of_work() as uow:
                    await uow.queue.release(self._worker_id, [entry.entry_id for entry in entries])
                logger.error(
                    "Queue batch promotion failed, claims released",
                    worker_id=self._worker_id,
                    claimed=len(entries),
                )
            raise

        logger.info(
            "Queue batch promoted",
            worker_id=self._worker_id,
            claimed=len(entries),
            promoted=len(records),
            lost_claims=len(entries) - len(records),
            queue_depth=depth,
        )
        return len(records)

    async def drain(self, max_batches: int | None = None) -> int:
        """Run cycles back to back until the queue yields nothing.

        Args:
            max_batches: Optional cap on the number of cycles.

        Returns:
            Total change records created.
        """
        total = 0
        batches = 0
        while max_batches is None or batches < max_batches:
            promoted = await self.run_once()
            batches += 1
            if promoted == 0:
                break
            total += promoted
        return total

    def run_forever(self, interval_seconds: float) -> PeriodicTask:
        """Start promoting one batch every ``interval_seconds``.

        Returns:
            The started task. Await ``stop()`` on it to shut the worker down.
        """
        task = PeriodicTask(f"queue-worker:{self._worker_id}", interval_seconds, self.run_once)
        task.start()
        return task
