"""Mutation planning: collected entries vs. what a target holds."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from .codec import fingerprint, key_str
from .errors import DuplicateKeyError
from .persistence import TargetState


@dataclass
class MutationPlan:
    """Minimal set of changes bringing one target in sync."""
    export_name: str
    # (primary key, value fields, content hash)
    upserts: list[tuple[Any, dict[str, Any], str]] = field(default_factory=list)
    deletes: list[Any] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.upserts and not self.deletes

    def summary(self) -> dict[str, int]:
        return {"upserts": len(self.upserts), "deletes": len(self.deletes)}


def primary_key_of(entry: dict[str, Any], key_fields: Sequence[str]) -> Any:
    """Single key field -> its value; several -> a tuple of values."""
    if len(key_fields) == 1:
        return entry[key_fields[0]]
    return tuple(entry[name] for name in key_fields)


def compute_mutations(
    export_name: str,
    key_fields: Sequence[str],
    entries: Iterable[dict[str, Any]],
    recorded: TargetState,
) -> MutationPlan:
    """
    Partition entries by primary key and diff them against recorded state.

    Upserts: keys that are new or whose entry content hash changed.
    Deletes: recorded keys no longer present.

    Raises:
        DuplicateKeyError: two entries share a primary key
    """
    current: dict[str, tuple[Any, dict[str, Any]]] = {}
    for entry in entries:
        key = primary_key_of(entry, key_fields)
        k = key_str(key)
        if k in current:
            raise DuplicateKeyError(export_name, key)
        current[k] = (key, entry)

    plan = MutationPlan(export_name)
    for k in sorted(current):
        key, entry = current[k]
        content_hash = fingerprint(entry)
        if recorded.hashes.get(k) != content_hash:
            values = {name: v for name, v in entry.items() if name not in key_fields}
            plan.upserts.append((key, values, content_hash))

    plan.deletes = [recorded.keys[k] for k in sorted(recorded.keys) if k not in current]
    return plan
