"""Wiring of the changelog components from Settings.

``build_runtime`` assembles the backend, interceptor, engines, services and
background tasks for the configured backend. The FastAPI lifespan in main.py
builds one runtime at startup, starts its tasks and closes it on shutdown.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from aumos_changelog.adapters.archive import GzipJsonlArchive
from aumos_changelog.adapters.database import (
    SqlAuditBackend,
    close_changelog_db,
    create_schema,
    get_engine,
    init_changelog_db,
)
from aumos_changelog.adapters.memory import InMemoryAuditBackend
from aumos_changelog.adapters.primary_store import InMemoryPrimaryStore
from aumos_changelog.adapters.repositories import SqlPrimaryStore
from aumos_changelog.core.alerts import AlertEvaluator
from aumos_changelog.core.interceptor import CaptureInterceptor
from aumos_changelog.core.interfaces import IAuditBackend, IPrimaryStore
from aumos_changelog.core.reconstruction import ReconstructionEngine
from aumos_changelog.core.retention import PartitionManager
from aumos_changelog.core.scheduler import PeriodicTask
from aumos_changelog.core.services import ChangelogAdminService, ChangelogService
from aumos_changelog.core.worker import QueueWorker
from aumos_changelog.observability import get_logger
from aumos_changelog.settings import Settings

logger = get_logger(__name__)


@dataclass
class ChangelogRuntime:
    """Every long-lived component of one changelog deployment."""

    settings: Settings
    backend: IAuditBackend
    primary_store: IPrimaryStore
    interceptor: CaptureInterceptor
    worker: QueueWorker
    evaluator: AlertEvaluator
    partitions: PartitionManager
    changelog_service: ChangelogService
    admin_service: ChangelogAdminService
    tasks: list[PeriodicTask] = field(default_factory=list)

    async def start(self) -> None:
        """Create the current partitions, then start the background tasks."""
        await self.partitions.ensure_partitions()
        for task in self.tasks:
            task.start()

    async def close(self) -> None:
        for task in self.tasks:
            await task.stop()
        if self.settings.backend == "postgres":
            await close_changelog_db()


async def build_runtime(settings: Settings) -> ChangelogRuntime:
    """Assemble a runtime for ``settings.backend``.

    The postgres backend initializes the engine and ensures the schema; the
    memory backend archives partitions to ``settings.archive_directory``.
    """
    interceptor = CaptureInterceptor(
        mode=settings.capture_mode,
        strict=settings.strict_capture,
        suppress_redacted_only_updates=settings.suppress_redacted_only_updates,
        tracked_entities=settings.tracked_entities,
    )

    backend: IAuditBackend
    primary_store: IPrimaryStore
    if settings.backend == "postgres":
        session_factory = await init_changelog_db(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )
        await create_schema(get_engine(), settings.archive_schema)
        backend = SqlAuditBackend(session_factory, settings.archive_schema)
        primary_store = SqlPrimaryStore(session_factory, default_key_column=settings.primary_key_column)
    else:
        memory_backend = InMemoryAuditBackend(archive=GzipJsonlArchive(settings.archive_directory))
        backend = memory_backend
        primary_store = InMemoryPrimaryStore(
            interceptor, memory_backend, principal=settings.capture_principal
        )

    worker = QueueWorker(
        backend,
        batch_size=settings.worker_batch_size,
        lease=timedelta(seconds=settings.claim_lease_seconds),
    )
    evaluator = AlertEvaluator(backend)
    partitions = PartitionManager(
        backend,
        period=settings.partition_period,
        partitions_ahead=settings.partitions_ahead,
        retention=timedelta(days=settings.retention_days),
        action=settings.retention_action,
        max_attempts=settings.retention_max_attempts,
    )

    runtime = ChangelogRuntime(
        settings=settings,
        backend=backend,
        primary_store=primary_store,
        interceptor=interceptor,
        worker=worker,
        evaluator=evaluator,
        partitions=partitions,
        changelog_service=ChangelogService(backend, ReconstructionEngine(primary_store)),
        admin_service=ChangelogAdminService(
            backend, interceptor, partitions, principal=settings.capture_principal
        ),
        tasks=[
            PeriodicTask("queue-worker", settings.worker_interval_seconds, worker.run_once),
            PeriodicTask("alert-evaluator", settings.alert_interval_seconds, evaluator.evaluate_once),
            PeriodicTask("partition-manager", settings.partition_interval_seconds, partitions.run_once),
        ],
    )
    logger.info(
        "Changelog runtime built",
        backend=settings.backend,
        capture_mode=settings.capture_mode,
        strict_capture=settings.strict_capture,
        tracked_entities=sorted(settings.tracked_entities),
    )
    return runtime
