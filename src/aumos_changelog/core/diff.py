"""Diff computation with redaction for captured row mutations.

Given the old and/or new field maps of one row, produces redacted before and
after snapshots plus the set of changed fields. Excluded fields are removed
from both snapshots and from the changed set; the pre-redaction changed set is
kept separately so callers can tell a true no-op UPDATE apart from an UPDATE
that only touched excluded fields.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from aumos_changelog.core.records import Operation
from aumos_changelog.core.redaction import strip_fields


@dataclass(frozen=True)
class SnapshotDiff:
    """Result of diffing one mutation.

    Attributes:
        old_snapshot: Redacted state before the mutation (UPDATE/DELETE).
        new_snapshot: Redacted state after the mutation (INSERT/UPDATE).
        changed_fields: Non-excluded changed fields (UPDATE only, else None).
        raw_changed_fields: Changed fields before exclusion (UPDATE only).
        redacted_fields: Excluded fields that were present on the row.
    """

    old_snapshot: dict[str, Any] | None
    new_snapshot: dict[str, Any] | None
    changed_fields: frozenset[str] | None
    raw_changed_fields: frozenset[str] | None
    redacted_fields: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_noop(self) -> bool:
        """True for an UPDATE that changed nothing at all."""
        return self.raw_changed_fields is not None and not self.raw_changed_fields

    @property
    def only_redacted_changes(self) -> bool:
        """True for an UPDATE whose every changed field is excluded."""
        return bool(self.raw_changed_fields) and not self.changed_fields


def values_distinct(left: Any, right: Any) -> bool:
    """Null-safe distinctness: two NULLs are equal, NULL and a value are not.

    Booleans are never equal to numbers, matching JSON value semantics.
    """
    if left is None or right is None:
        return left is not right
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is not type(right) or left != right
    return bool(left != right)


def changed_keys(old: Mapping[str, Any], new: Mapping[str, Any]) -> frozenset[str]:
    """Keys present on only one side plus keys whose values are distinct."""
    only_one_side = set(old.keys()) ^ set(new.keys())
    differing = {key for key in old.keys() & new.keys() if values_distinct(old[key], new[key])}
    return frozenset(only_one_side | differing)


def compute_diff(
    operation: Operation,
    old: Mapping[str, Any] | None,
    new: Mapping[str, Any] | None,
    excluded: frozenset[str] = frozenset(),
) -> SnapshotDiff:
    """Compute redacted snapshots and changed fields for one row mutation.

    Args:
        operation: INSERT, UPDATE or DELETE.
        old: Field map before the mutation. Required for UPDATE and DELETE.
        new: Field map after the mutation. Required for INSERT and UPDATE.
        excluded: Field names to strip from every part of the result.

    Returns:
        The SnapshotDiff for the mutation.

    Raises:
        ValueError: If the required side of the mutation is missing.
    """
    if operation == "INSERT":
        if new is None:
            raise ValueError("INSERT requires the new record")
        return SnapshotDiff(
            old_snapshot=None,
            new_snapshot=strip_fields(new, excluded),
            changed_fields=None,
            raw_changed_fields=None,
            redacted_fields=frozenset(new.keys() & excluded),
        )

    if operation == "DELETE":
        if old is None:
            raise ValueError("DELETE requires the old record")
        return SnapshotDiff(
            old_snapshot=strip_fields(old, excluded),
            new_snapshot=None,
            changed_fields=None,
            raw_changed_fields=None,
            redacted_fields=frozenset(old.keys() & excluded),
        )

    if operation == "UPDATE":
        if old is None or new is None:
            raise ValueError("UPDATE requires both the old and the new record")
        raw = changed_keys(old, new)
        return SnapshotDiff(
            old_snapshot=strip_fields(old, excluded),
            new_snapshot=strip_fields(new, excluded),
            changed_fields=raw - excluded,
            raw_changed_fields=raw,
            redacted_fields=frozenset((old.keys() | new.keys()) & excluded),
        )

    raise ValueError(f"Unsupported operation: {operation!r}")
