"""Field redaction shared by capture and the read paths.

Capture strips the fields excluded at capture time. Exclusion rules are not
retroactive for stored records, so read paths run every record through
``mask_record`` with the fields excluded *now*; a field excluded after the
fact is reported as redacted instead of being served from storage.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from aumos_changelog.core.records import PendingChange

ChangeT = TypeVar("ChangeT", bound=PendingChange)


def strip_fields(values: Mapping[str, Any], excluded: frozenset[str]) -> dict[str, Any]:
    """Copy of ``values`` without the excluded keys."""
    return {key: value for key, value in values.items() if key not in excluded}


def mask_record(change: ChangeT, excluded: frozenset[str]) -> ChangeT:
    """Hide currently excluded fields of a stored change.

    Returns the change unchanged when none of its fields are excluded.
    """
    if not excluded:
        return change

    present: set[str] = set()
    for snapshot in (change.old_snapshot, change.new_snapshot):
        if snapshot is not None:
            present |= snapshot.keys() & excluded
    if change.changed_fields is not None:
        present |= change.changed_fields & excluded
    if not present:
        return change

    return change.model_copy(
        update={
            "old_snapshot": strip_fields(change.old_snapshot, excluded)
            if change.old_snapshot is not None
            else None,
            "new_snapshot": strip_fields(change.new_snapshot, excluded)
            if change.new_snapshot is not None
            else None,
            "changed_fields": change.changed_fields - excluded
            if change.changed_fields is not None
            else None,
            "redacted_fields": change.redacted_fields | present,
        }
    )
