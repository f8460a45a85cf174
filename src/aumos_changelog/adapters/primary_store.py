"""In-memory primary datastore with changelog capture.

Stands in for the transactional datastore whose mutations are audited. Every
``transaction()`` block is one unit of work: row writes are staged on the
transaction and applied only on clean exit, together with the audit rows the
interceptor staged through the transaction's ``ICaptureSink`` methods. An
exception inside the block discards both.

Transactions are serialised by an ``asyncio.Lock``, so transaction ids and
capture timestamps increase in commit order.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from aumos_changelog.core.interceptor import CaptureInterceptor
from aumos_changelog.core.interfaces import IAuditBackend
from aumos_changelog.core.records import (
    DEFAULT_PRINCIPAL,
    CaptureContext,
    Operation,
    PendingChange,
    utc_now,
)
from aumos_changelog.errors import ConflictError, NotFoundError, ValidationError
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

_Row = dict[str, Any]


class PrimaryTransaction:
    """One open transaction against an ``InMemoryPrimaryStore``.

    Also serves as the interceptor's capture sink for the transaction.
    """

    def __init__(
        self,
        store: InMemoryPrimaryStore,
        transaction_id: int,
        captured_at: datetime,
        context: CaptureContext,
    ) -> None:
        self._store = store
        self._transaction_id = transaction_id
        self._captured_at = captured_at
        self._context = context
        self._sequence = itertools.count()
        self._writes: dict[tuple[str, str], _Row | None] = {}
        self._staged: list[PendingChange] = []
        self._queued: list[PendingChange] = []

    # ------------------------------------------------------------------
    # ICaptureSink
    # ------------------------------------------------------------------

    @property
    def transaction_id(self) -> int:
        return self._transaction_id

    @property
    def captured_at(self) -> datetime:
        return self._captured_at

    @property
    def principal(self) -> str:
        return self._store.principal

    def next_sequence(self) -> int:
        return next(self._sequence)

    async def excluded_fields(self, entity: str) -> frozenset[str]:
        async with self._store.backend.unit_of_work() as uow:
            return await uow.exclusions.excluded_fields(entity)

    async def write_change(self, change: PendingChange) -> None:
        self._staged.append(change)

    async def enqueue_change(self, change: PendingChange) -> None:
        self._queued.append(change)

    # ------------------------------------------------------------------
    # Row mutations
    # ------------------------------------------------------------------

    def get(self, entity: str, row_identity: str) -> _Row | None:
        """Read a row as this transaction sees it."""
        key = (entity, row_identity)
        if key in self._writes:
            row = self._writes[key]
        else:
            row = self._store.row(entity, row_identity)
        return dict(row) if row is not None else None

    async def insert(self, entity: str, values: Mapping[str, Any]) -> str:
        """Insert a row. Returns its identity.

        Raises:
            ValidationError: If the entity is unknown or the key field is missing.
            ConflictError: If a row with the same identity exists.
        """
        key_field = self._store.key_field(entity)
        if values.get(key_field) is None:
            raise ValidationError(f"{entity} rows require a value for {key_field}")
        row_identity = str(values[key_field])
        if self.get(entity, row_identity) is not None:
            raise ConflictError(f"{entity} row {row_identity} already exists")

        new = dict(values)
        self._writes[(entity, row_identity)] = new
        await self._capture(entity, "INSERT", row_identity, None, new)
        return row_identity

    async def update(self, entity: str, row_identity: str, values: Mapping[str, Any]) -> _Row:
        """Apply ``values`` over an existing row. Returns the new row.

        Raises:
            NotFoundError: If the row does not exist.
            ValidationError: If the update changes the key field.
        """
        old = self.get(entity, row_identity)
        if old is None:
            raise NotFoundError(resource=entity, resource_id=row_identity)
        key_field = self._store.key_field(entity)
        if key_field in values and str(values[key_field]) != row_identity:
            raise ValidationError(f"The key field {key_field} of {entity} cannot change")

        new = {**old, **values}
        self._writes[(entity, row_identity)] = new
        await self._capture(entity, "UPDATE", row_identity, old, new)
        return dict(new)

    async def delete(self, entity: str, row_identity: str) -> None:
        """Delete an existing row.

        Raises:
            NotFoundError: If the row does not exist.
        """
        old = self.get(entity, row_identity)
        if old is None:
            raise NotFoundError(resource=entity, resource_id=row_identity)
        self._writes[(entity, row_identity)] = None
        await self._capture(entity, "DELETE", row_identity, old, None)

    async def _capture(
        self,
        entity: str,
        operation: Operation,
        row_identity: str,
        old: _Row | None,
        new: _Row | None,
    ) -> None:
        await self._store.interceptor.on_mutation(
            self, entity, operation, row_identity, old, new, self._context
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        """Flush staged audit rows, then apply the row writes."""
        if self._staged or self._queued:
            try:
                async with self._store.backend.unit_of_work() as uow:
                    if self._staged:
                        await uow.changes.append(self._staged)
                    if self._queued:
                        await uow.queue.enqueue(self._queued)
            except Exception as exc:
                first = (self._staged or self._queued)[0]
                self._store.interceptor.handle_failure(
                    exc,
                    entity=first.entity,
                    row_identity=first.row_identity,
                    operation=first.operation,
                )

        self._store.apply(self._writes)


class InMemoryPrimaryStore:
    """Dictionary-backed primary store.

    Args:
        interceptor: Capture interceptor called for every row mutation.
        backend: Audit backend receiving captured changes.
        clock: Source of capture timestamps.
        principal: Service principal recorded as ``changed_by`` on every change.
    """

    def __init__(
        self,
        interceptor: CaptureInterceptor,
        backend: IAuditBackend,
        clock: Callable[[], datetime] = utc_now,
        principal: str = DEFAULT_PRINCIPAL,
    ) -> None:
        self.interceptor = interceptor
        self.backend = backend
        self.principal = principal
        self._clock = clock
        self._lock = asyncio.Lock()
        self._transaction_ids = itertools.count(1)
        self._key_fields: dict[str, str] = {}
        self._rows: dict[str, dict[str, _Row]] = {}

    def register_entity(self, entity: str, key_field: str = "id") -> None:
        self._key_fields[entity] = key_field
        self._rows.setdefault(entity, {})

    def key_field(self, entity: str) -> str:
        try:
            return self._key_fields[entity]
        except KeyError:
            raise ValidationError(f"Unknown entity: {entity}") from None

    def row(self, entity: str, row_identity: str) -> _Row | None:
        self.key_field(entity)
        return self._rows[entity].get(row_identity)

    def apply(self, writes: Mapping[tuple[str, str], _Row | None]) -> None:
        for (entity, row_identity), row in writes.items():
            if row is None:
                self._rows[entity].pop(row_identity, None)
            else:
                self._rows[entity][row_identity] = dict(row)

    async def fetch_current(self, entity: str, row_identity: str) -> dict[str, Any] | None:
        row = self._rows.get(entity, {}).get(row_identity)
        return dict(row) if row is not None else None

    @asynccontextmanager
    async def transaction(
        self, context: CaptureContext | None = None
    ) -> AsyncIterator[PrimaryTransaction]:
        """Open a transaction. Commits on clean exit, discards everything on error."""
        async with self._lock:
            tx = PrimaryTransaction(
                self,
                transaction_id=next(self._transaction_ids),
                captured_at=self._clock(),
                context=context or CaptureContext(),
            )
            try:
                yield tx
            except Exception:
                logger.debug("Primary transaction rolled back", transaction_id=tx.transaction_id)
                raise
            await tx.commit()
