"""
Field Diff
==========
Per-field comparison of a pre-change snapshot with a submitted body.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

# Identity and timestamp bookkeeping, never audited as field changes
IGNORED_FIELDS = frozenset({"id", "createdAt", "updatedAt", "created_at", "updated_at"})


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    old_value: Any
    new_value: Any


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_field_changes(
    snapshot: Dict[str, Any],
    body: Dict[str, Any],
    tracked_fields: Optional[FrozenSet[str]] = None,
) -> List[FieldChange]:
    """
    List changed fields in body order.

    A body field counts only if it is tracked: listed in ``tracked_fields``
    when given, otherwise present in the snapshot. Values are compared by
    their canonical JSON form.
    """
    changes = []
    for field_name, new_value in body.items():
        if field_name in IGNORED_FIELDS:
            continue
        if tracked_fields is not None:
            if field_name not in tracked_fields:
                continue
        elif field_name not in snapshot:
            continue

        old_value = snapshot.get(field_name)
        if _canonical(old_value) != _canonical(new_value):
            changes.append(FieldChange(field_name, old_value, new_value))
    return changes
