"""
Field-level diff between a stored record and a proposed change.

Blank handling: unless a field is declared ``strict_empty``, the values
None, missing, "" and 0 all mean "no value" and compare equal. This keeps
a form that re-submits an empty string for an unset field from producing
spurious history entries. Fields where zero is meaningful (status,
quantity, disk counts) are declared strict_empty in the schema.

Invariants:
    - diff_records never mutates its inputs
    - Changes are returned in schema field order
    - Only schema fields present in the proposal are compared
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..schema.types import CollectionDef, FieldDef

_MISSING = object()


@dataclass(frozen=True)
class FieldChange:
    """One changed field.

    Attributes:
        field: Field name
        old: Value before the change (None if absent)
        new: Proposed value (None if cleared)
    """

    field: str
    old: Any
    new: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "old": self.old, "new": self.new}


def is_blank(value: Any) -> bool:
    """True for values that mean "no value" on a non-strict field."""
    if value is _MISSING or value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (int, float)):
        return value == 0
    return False


def values_equal(fdef: FieldDef | None, old: Any, new: Any) -> bool:
    """Compare two field values under the field's blank semantics."""
    strict = fdef.strict_empty if fdef is not None else False
    if not strict and is_blank(old) and is_blank(new):
        return True
    if old is _MISSING:
        old = None
    if new is _MISSING:
        new = None
    # bools are ints in Python; True must not equal 1 here
    if isinstance(old, bool) != isinstance(new, bool):
        return False
    return old == new


def diff_records(
    collection: CollectionDef,
    old: dict[str, Any],
    proposed: dict[str, Any],
) -> list[FieldChange]:
    """Compute the changes a partial update would make.

    Args:
        collection: Schema of the record's collection
        old: Current stored payload
        proposed: Partial payload (fields absent here are unchanged)

    Returns:
        FieldChange for each field whose value differs, in schema order
    """
    changes = []
    for fdef in collection.fields:
        if fdef.name not in proposed:
            continue
        before = old.get(fdef.name, _MISSING)
        after = proposed[fdef.name]
        if values_equal(fdef, before, after):
            continue
        changes.append(
            FieldChange(
                field=fdef.name,
                old=None if before is _MISSING else before,
                new=after,
            )
        )
    return changes


def diff_payloads(
    collection: CollectionDef,
    old: dict[str, Any],
    new: dict[str, Any],
) -> list[FieldChange]:
    """Full comparison of two payloads, absent fields treated as missing."""
    proposed = {f.name: new.get(f.name) for f in collection.fields if f.name in new or f.name in old}
    return diff_records(collection, old, proposed)
