"""Service-specific settings for aumos-changelog.

Changelog settings use the AUMOS_CHANGELOG_ prefix and cover:
- Backend selection (in-memory or PostgreSQL) and connection pool sizing
- Capture mode (synchronous or queued) and failure coupling
- Queue worker cadence and claim leases
- Partitioning, retention and archival
- Alert evaluation cadence
- Logging
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for aumos-changelog.

    Environment variable prefix: AUMOS_CHANGELOG_
    """

    service_name: str = "aumos-changelog"

    # -------------------------------------------------------------------------
    # Backend
    # -------------------------------------------------------------------------

    backend: Literal["memory", "postgres"] = Field(
        default="memory",
        description="Storage backend for the changelog, queue, exclusions and alerts.",
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/aumos",
        description="PostgreSQL connection URL. Used only when backend = postgres.",
    )
    db_pool_size: int = Field(
        default=5,
        description="Connection pool size for the changelog database.",
    )
    db_max_overflow: int = Field(
        default=2,
        description="Max overflow connections above db_pool_size.",
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for a connection before raising an error.",
    )

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    capture_mode: Literal["sync", "async"] = Field(
        default="sync",
        description="sync writes the change record inside the mutation's transaction; "
        "async writes a queue entry that a worker later promotes.",
    )
    strict_capture: bool = Field(
        default=True,
        description="When true, a capture failure aborts the triggering mutation. "
        "When false, the failure is logged and the mutation proceeds.",
    )
    suppress_redacted_only_updates: bool = Field(
        default=True,
        description="When true, an UPDATE whose only changed fields are excluded produces "
        "no change record. When false, a record with empty changed_fields is written.",
    )
    tracked_entities: list[str] = Field(
        default_factory=list,
        description="Entities with capture enabled at startup.",
    )
    primary_key_column: str = Field(
        default="id",
        description="Key column of tracked tables, used to read live rows for reconstruction.",
    )
    capture_principal: str = Field(
        default="aumos-changelog",
        min_length=1,
        description="Principal recorded as changed_by by the memory backend and as excluded_by "
        "when an exclusion names no actor. The postgres backend records the session role.",
    )

    # -------------------------------------------------------------------------
    # Queue worker
    # -------------------------------------------------------------------------

    worker_interval_seconds: float = Field(
        default=1.0,
        description="Seconds between queue worker cycles. Each cycle promotes at most "
        "worker_batch_size entries.",
    )
    worker_batch_size: int = Field(
        default=500,
        ge=1,
        description="Maximum queue entries claimed per cycle.",
    )
    claim_lease_seconds: float = Field(
        default=30.0,
        description="Seconds a claimed entry stays invisible to other workers.",
    )

    # -------------------------------------------------------------------------
    # Partitioning and retention
    # -------------------------------------------------------------------------

    partition_period: Literal["day", "month"] = Field(
        default="month",
        description="Width of each time partition of the changelog.",
    )
    partitions_ahead: int = Field(
        default=2,
        ge=0,
        description="Number of future partitions created ahead of need.",
    )
    partition_interval_seconds: float = Field(
        default=3600.0,
        description="Seconds between partition maintenance cycles.",
    )
    retention_days: int = Field(
        default=365,
        ge=1,
        description="Partitions ending more than this many days ago are archived or dropped.",
    )
    retention_action: Literal["archive", "drop"] = Field(
        default="archive",
        description="What happens to partitions past the retention horizon.",
    )
    retention_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per partition before the retention cycle reports a failure.",
    )
    archive_directory: str = Field(
        default="./changelog-archive",
        description="Directory for gzip JSONL partition archives (memory backend).",
    )
    archive_schema: str = Field(
        default="changelog_archive",
        description="Schema that archived partitions are moved into (postgres backend).",
    )

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    alert_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between alert evaluation cycles.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_json: bool = Field(
        default=True,
        description="Render logs as JSON. Console rendering is used when false.",
    )

    model_config = SettingsConfigDict(env_prefix="AUMOS_CHANGELOG_")
