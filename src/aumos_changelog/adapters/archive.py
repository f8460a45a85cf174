"""Cold-namespace sinks for archived changelog partitions.

An archived partition is written once and never merged back into the hot
changelog. ``read`` exists for auditors and tests only.

- InMemoryArchive     - dict of partition name to records
- GzipJsonlArchive    - one ``<partition>.jsonl.gz`` file per partition
"""

from __future__ import annotations

import gzip
import json
import os
from pathlib import Path

from aumos_changelog.core.records import ChangeRecord
from aumos_changelog.errors import ConflictError, NotFoundError


class InMemoryArchive:
    """Archive that keeps partitions in process memory."""

    def __init__(self) -> None:
        self._partitions: dict[str, list[ChangeRecord]] = {}

    def write(self, partition_name: str, records: list[ChangeRecord]) -> None:
        if partition_name in self._partitions:
            raise ConflictError(f"Partition {partition_name} is already archived")
        self._partitions[partition_name] = list(records)

    def read(self, partition_name: str) -> list[ChangeRecord]:
        if partition_name not in self._partitions:
            raise NotFoundError(resource="ArchivedPartition", resource_id=partition_name)
        return list(self._partitions[partition_name])

    @property
    def partition_names(self) -> list[str]:
        return sorted(self._partitions)


class GzipJsonlArchive:
    """Archive writing each partition as gzip-compressed JSON lines.

    Files are written to a temporary name and renamed into place, so a failed
    write never leaves a partial archive behind.

    Args:
        directory: Target directory, created on first write.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def _path(self, partition_name: str) -> Path:
        return self._directory / f"{partition_name}.jsonl.gz"

    def write(self, partition_name: str, records: list[ChangeRecord]) -> None:
        target = self._path(partition_name)
        if target.exists():
            raise ConflictError(f"Partition {partition_name} is already archived")

        self._directory.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        with gzip.open(tmp, "wt", encoding="utf-8") as handle:
            for record in records:
                handle.write(json.dumps(record.model_dump(mode="json"), separators=(",", ":")))
                handle.write("\n")
        os.replace(tmp, target)

    def read(self, partition_name: str) -> list[ChangeRecord]:
        target = self._path(partition_name)
        if not target.exists():
            raise NotFoundError(resource="ArchivedPartition", resource_id=partition_name)
        with gzip.open(target, "rt", encoding="utf-8") as handle:
            return [ChangeRecord.model_validate(json.loads(line)) for line in handle if line.strip()]
