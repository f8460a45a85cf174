"""PostgreSQL engine, schema bootstrap and unit of work for the changelog.

Key exports:
- init_changelog_db(...)    - Call at startup to initialize the engine
- close_changelog_db()      - Call at shutdown to dispose the engine
- get_engine()              - The initialized engine
- get_session_factory()     - Session factory of the initialized engine
- create_schema(...)        - Create tables, the default partition and the archive schema
- SqlAuditBackend           - IAuditBackend opening one session per unit of work
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from aumos_changelog.adapters.repositories import (
    SqlAlertStore,
    SqlCaptureQueue,
    SqlChangelogStore,
    SqlExclusionRegistry,
    checked_identifier,
)
from aumos_changelog.core.models import (
    CHANGELOG_TABLE,
    DEFAULT_PARTITION_TABLE,
    Base,
    ChangelogPartition,
)
from aumos_changelog.observability import get_logger

logger = get_logger(__name__)

# Module-level engine and session factory - initialized by init_changelog_db()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_changelog_db(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 2,
    pool_timeout: int = 30,
) -> async_sessionmaker[AsyncSession]:
    """Initialize the changelog database engine and session factory.

    Args:
        database_url: PostgreSQL connection URL (postgresql+asyncpg://...).
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.

    Returns:
        The session factory bound to the new engine.
    """
    global _engine, _session_factory  # noqa: PLW0603

    logger.info("Initializing changelog engine", pool_size=pool_size, max_overflow=max_overflow)

    _engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        # Snapshots hold row values; statements are never echoed
        echo=False,
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _session_factory


async def close_changelog_db() -> None:
    """Dispose the changelog database engine."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing changelog engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Return the engine.

    Raises:
        RuntimeError: If init_changelog_db() has not been called yet.
    """
    if _engine is None:
        raise RuntimeError(
            "Changelog database has not been initialized. "
            "Call init_changelog_db() in the application lifespan handler."
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory.

    Raises:
        RuntimeError: If init_changelog_db() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Changelog database has not been initialized. "
            "Call init_changelog_db() in the application lifespan handler."
        )
    return _session_factory


async def create_schema(engine: AsyncEngine, archive_schema: str = "changelog_archive") -> None:
    """Create all changelog tables, the default partition and the archive schema.

    Safe to run repeatedly.
    """
    archive_schema = checked_identifier(archive_schema)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(
            text(
                f"CREATE TABLE IF NOT EXISTS {DEFAULT_PARTITION_TABLE} "
                f"PARTITION OF {CHANGELOG_TABLE} DEFAULT"
            )
        )
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {archive_schema}"))

        result = await conn.execute(
            select(ChangelogPartition.name).where(ChangelogPartition.name == DEFAULT_PARTITION_TABLE)
        )
        if result.scalar_one_or_none() is None:
            await conn.execute(
                ChangelogPartition.__table__.insert().values(
                    name=DEFAULT_PARTITION_TABLE, status="open", is_default=True
                )
            )
    logger.info("Changelog schema ensured", archive_schema=archive_schema)


@dataclass
class SqlUnitOfWork:
    """Repositories sharing one session, hence one transaction."""

    session: AsyncSession
    archive_schema: str = "changelog_archive"
    changes: SqlChangelogStore = field(init=False)
    queue: SqlCaptureQueue = field(init=False)
    exclusions: SqlExclusionRegistry = field(init=False)
    alerts: SqlAlertStore = field(init=False)

    def __post_init__(self) -> None:
        self.changes = SqlChangelogStore(self.session, self.archive_schema)
        self.queue = SqlCaptureQueue(self.session)
        self.exclusions = SqlExclusionRegistry(self.session)
        self.alerts = SqlAlertStore(self.session)


class SqlAuditBackend:
    """Opens a session per unit of work; commits on clean exit, rolls back on error.

    Args:
        session_factory: Factory bound to the changelog database.
        archive_schema: Schema that archived partitions are moved into.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        archive_schema: str = "changelog_archive",
    ) -> None:
        self._session_factory = session_factory
        self._archive_schema = archive_schema

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self._session_factory() as session:
            try:
                yield SqlUnitOfWork(session, self._archive_schema)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
