"""Capture interceptor invoked by the primary store on every tracked mutation.

The primary store calls ``on_mutation`` synchronously, inside the unit of work
of the mutation, passing its transaction-scoped ``ICaptureSink``. The
interceptor diffs and redacts the row, then either stages the change record
itself (sync mode) or a queue entry (async mode). Either way the audit write
commits iff the mutation commits.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Literal

from aumos_changelog.core.diff import compute_diff
from aumos_changelog.core.interfaces import ICaptureSink
from aumos_changelog.core.records import CaptureContext, Operation, PendingChange
from aumos_changelog.errors import CaptureFailure
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

CaptureMode = Literal["sync", "async"]


class CaptureInterceptor:
    """Turns tracked row mutations into pending change records.

    Args:
        mode: ``sync`` stages the record with the mutation; ``async`` stages a
            queue entry for a worker to promote later.
        strict: When true a capture failure raises CaptureFailure and aborts
            the mutation. When false it is logged and the mutation proceeds.
        suppress_redacted_only_updates: Skip UPDATEs whose every changed field
            is excluded. When false such an UPDATE is written with an empty
            changed_fields set.
        tracked_entities: Entities with capture enabled from the start.
    """

    def __init__(
        self,
        mode: CaptureMode = "sync",
        strict: bool = True,
        suppress_redacted_only_updates: bool = True,
        tracked_entities: Iterable[str] = (),
    ) -> None:
        self._mode = mode
        self._strict = strict
        self._suppress_redacted_only = suppress_redacted_only_updates
        self._tracked: set[str] = set(tracked_entities)

    @property
    def mode(self) -> CaptureMode:
        return self._mode

    @property
    def strict(self) -> bool:
        return self._strict

    @property
    def tracked_entities(self) -> frozenset[str]:
        return frozenset(self._tracked)

    def enable_capture(self, entity: str) -> None:
        self._tracked.add(entity)
        logger.info("Capture enabled", entity=entity)

    def disable_capture(self, entity: str) -> None:
        self._tracked.discard(entity)
        logger.info("Capture disabled", entity=entity)

    def is_tracked(self, entity: str) -> bool:
        return entity in self._tracked

    async def on_mutation(
        self,
        sink: ICaptureSink,
        entity: str,
        operation: Operation,
        row_identity: str,
        old: Mapping[str, Any] | None,
        new: Mapping[str, Any] | None,
        context: CaptureContext,
    ) -> PendingChange | None:
        """Capture one row mutation.

        Args:
            sink: Transaction-scoped writer of the mutating unit of work.
            entity: Mutated entity name.
            operation: INSERT, UPDATE or DELETE.
            row_identity: Identity of the mutated row.
            old: Row state before the mutation (UPDATE/DELETE).
            new: Row state after the mutation (INSERT/UPDATE).
            context: Actor/tenant/request metadata for the mutation.

        Returns:
            The staged PendingChange, or None if the entity is untracked, the
            UPDATE was suppressed, or capture failed in lenient mode.

        Raises:
            CaptureFailure: In strict mode, if diffing, redaction lookup or the
                staged write fails.
        """
        if not self.is_tracked(entity):
            return None

        try:
            excluded = await sink.excluded_fields(entity)
            diff = compute_diff(operation, old, new, excluded)

            if diff.is_noop:
                logger.debug("No-op update skipped", entity=entity, row_identity=row_identity)
                return None
            if diff.only_redacted_changes and self._suppress_redacted_only:
                logger.debug(
                    "Update touching only excluded fields skipped",
                    entity=entity,
                    row_identity=row_identity,
                    redacted_fields=sorted(diff.redacted_fields),
                )
                return None

            change = PendingChange(
                entity=entity,
                operation=operation,
                row_identity=row_identity,
                old_snapshot=diff.old_snapshot,
                new_snapshot=diff.new_snapshot,
                changed_fields=diff.changed_fields,
                redacted_fields=diff.redacted_fields,
                captured_at=sink.captured_at,
                changed_by=sink.principal,
                actor_id=context.actor_id,
                tenant_id=context.tenant_id,
                request_id=context.request_id,
                client_address=str(context.client_address) if context.client_address else None,
                transaction_id=sink.transaction_id,
                sequence=sink.next_sequence(),
            )

            if self._mode == "sync":
                await sink.write_change(change)
            else:
                await sink.enqueue_change(change)
        except Exception as exc:
            self.handle_failure(exc, entity=entity, row_identity=row_identity, operation=operation)
            return None

        logger.debug(
            "Change captured",
            entity=entity,
            row_identity=row_identity,
            operation=operation,
            mode=self._mode,
            transaction_id=change.transaction_id,
            sequence=change.sequence,
        )
        return change

    def handle_failure(
        self,
        exc: Exception,
        *,
        entity: str,
        row_identity: str,
        operation: str,
    ) -> None:
        """Apply the failure policy to a capture error.

        Also called by primary stores whose staged audit writes fail at commit.

        Raises:
            CaptureFailure: In strict mode, always.
        """
        if self._strict:
            logger.error(
                "Capture failed, aborting mutation",
                entity=entity,
                row_identity=row_identity,
                operation=operation,
                error=str(exc),
            )
            raise CaptureFailure(entity, row_identity, operation, str(exc)) from exc

        logger.warning(
            "Capture failed, continuing in lenient mode",
            entity=entity,
            row_identity=row_identity,
            operation=operation,
            error=str(exc),
        )
