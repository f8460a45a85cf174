"""In-memory capture queue with lease-based exclusive claims.

A claim marks an entry with the worker id and a lease expiry. Claimed entries
are skipped by other workers until the owner releases them or the lease runs
out. Promotion re-checks ownership under the queue lock and moves the owned
entries into the changelog store in one step, so two workers can never
promote the same entry.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

from aumos_changelog.adapters.memory_store import InMemoryChangelogStore
from aumos_changelog.core.records import ChangeRecord, PendingChange, QueueEntry, utc_now
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)


class InMemoryCaptureQueue:
    """Claimable queue in front of an ``InMemoryChangelogStore``.

    Args:
        store: Changelog store that promoted entries are inserted into.
    """

    def __init__(self, store: InMemoryChangelogStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._entries: dict[int, QueueEntry] = {}
        self._next_id = 1

    async def enqueue(self, changes: list[PendingChange]) -> list[QueueEntry]:
        now = utc_now()
        with self._lock:
            entries = []
            for change in changes:
                entry = QueueEntry(entry_id=self._next_id, change=change, enqueued_at=now)
                self._entries[entry.entry_id] = entry
                self._next_id += 1
                entries.append(entry)
        return entries

    async def claim(
        self, worker_id: str, limit: int, lease: timedelta, now: datetime
    ) -> list[QueueEntry]:
        claimed = []
        with self._lock:
            for entry_id, entry in self._entries.items():
                if len(claimed) >= limit:
                    break
                if not entry.is_claimable(now):
                    continue
                updated = entry.model_copy(
                    update={"claimed_by": worker_id, "claim_expires_at": now + lease}
                )
                self._entries[entry_id] = updated
                claimed.append(updated)
        return claimed

    async def release(self, worker_id: str, entry_ids: list[int]) -> None:
        with self._lock:
            for entry_id in entry_ids:
                entry = self._entries.get(entry_id)
                if entry is not None and entry.claimed_by == worker_id:
                    self._entries[entry_id] = entry.model_copy(
                        update={"claimed_by": None, "claim_expires_at": None}
                    )

    async def promote(
        self, worker_id: str, entries: list[QueueEntry], now: datetime
    ) -> list[ChangeRecord]:
        with self._lock:
            owned = []
            for entry in entries:
                current = self._entries.get(entry.entry_id)
                if (
                    current is not None
                    and current.claimed_by == worker_id
                    and current.claim_expires_at is not None
                    and current.claim_expires_at > now
                ):
                    owned.append(current)

            records = self._store.insert_batch(entry.change for entry in owned)
            for entry in owned:
                del self._entries[entry.entry_id]

        if len(owned) < len(entries):
            logger.warning(
                "Claims lost before promotion",
                worker_id=worker_id,
                lost=len(entries) - len(owned),
            )
        return records

    async def pending(self, entity: str, row_identity: str) -> list[PendingChange]:
        with self._lock:
            return [
                entry.change
                for entry in self._entries.values()
                if entry.change.entity == entity and entry.change.row_identity == row_identity
            ]

    async def depth(self) -> int:
        with self._lock:
            return len(self._entries)
