"""
Change detection between the stored and freshly collected state of a resource.

A diff is a classification, not a patch: it answers whether a new history
version (or new child versions) must be opened. Unchanged resources only
advance `collected_at` on their snapshot, which keeps the ledger from growing
under steady state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from strata.modules.inventory.domain.kinds import ChildCollection, ResourceKind
from strata.modules.inventory.domain.records import Record


@dataclass(slots=True)
class ChildDiff:
    changed: bool = False


@dataclass(slots=True)
class RecordDiff:
    is_new: bool = False
    is_changed: bool = False
    child_diffs: dict[str, ChildDiff] = field(default_factory=dict)

    def has_any_change(self) -> bool:
        if self.is_new or self.is_changed:
            return True
        return any(child.changed for child in self.child_diffs.values())

    def changed_children(self) -> list[str]:
        return [name for name, child in self.child_diffs.items() if child.changed]


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


def values_equal(old: Any, new: Any) -> bool:
    """Equality with instant semantics for timestamps and byte semantics for payloads."""
    return _normalize(old) == _normalize(new)


def fields_changed(fields: Iterable[str], old: dict[str, Any], new: dict[str, Any]) -> bool:
    return any(not values_equal(old.get(name), new.get(name)) for name in fields)


def diff_children(
    collection: ChildCollection,
    old_rows: list[dict[str, Any]],
    new_rows: list[dict[str, Any]],
) -> ChildDiff:
    if len(old_rows) != len(new_rows):
        return ChildDiff(changed=True)

    old_map = {
        tuple(_normalize(row.get(k)) for k in collection.key_fields): tuple(
            _normalize(row.get(v)) for v in collection.value_fields
        )
        for row in old_rows
    }
    for row in new_rows:
        key = tuple(_normalize(row.get(k)) for k in collection.key_fields)
        if key not in old_map:
            return ChildDiff(changed=True)
        if old_map[key] != tuple(_normalize(row.get(v)) for v in collection.value_fields):
            return ChildDiff(changed=True)
    return ChildDiff(changed=False)


def diff_record(kind: ResourceKind, old: Optional[Record], new: Record) -> RecordDiff:
    if old is None:
        return RecordDiff(
            is_new=True,
            child_diffs={c.name: ChildDiff(changed=True) for c in kind.children},
        )

    diff = RecordDiff(is_changed=fields_changed(kind.fields, old.fields, new.fields))
    for collection in kind.children:
        diff.child_diffs[collection.name] = diff_children(
            collection,
            old.children.get(collection.name, []),
            new.children.get(collection.name, []),
        )
    return diff
