"""Operation specs and the operations that make up a flow graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .auth import collect_auth_keys, encode_auth_refs
from .codec import fingerprint
from .component import IndexSpec
from .scope import DataScope, DataSlice, GENERATED_UUID, _GeneratedUUID
from .types import DataType, TableType, encode_type


@dataclass(frozen=True)
class OpSpec:
    """A component type plus its configuration.

    Config values may hold AuthEntryReferences; they are stored by key only.
    """
    type: str
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> str:
        return self.type.split("/", 1)[0]

    def encoded_config(self) -> dict[str, Any]:
        return encode_auth_refs(dict(self.config))

    def auth_keys(self) -> set[str]:
        return collect_auth_keys(self.encoded_config())

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "config": self.encoded_config()}

    def fingerprint(self) -> str:
        return fingerprint(self.to_dict())


def spec(component_type: str, **config: Any) -> OpSpec:
    """Shorthand: spec("function/template", template="{0}!")."""
    return OpSpec(component_type, config)


@dataclass(frozen=True)
class ImportOp:
    name: str
    spec: OpSpec
    output_type: TableType
    refresh_interval: float | None = None
    change_detection: str = "auto"

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": "import",
            "name": self.name,
            "spec": self.spec.to_dict(),
            "output_type": encode_type(self.output_type),
            "refresh_interval": self.refresh_interval,
            "change_detection": self.change_detection,
        }


@dataclass(frozen=True)
class TransformOp:
    spec: OpSpec
    inputs: tuple[DataSlice, ...]
    output_field: str
    output_type: DataType
    scope_path: str
    behavior_version: int | None = None
    cache: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": "transform",
            "spec": self.spec.to_dict(),
            "inputs": [s.to_dict() for s in self.inputs],
            "output": self.output_field,
            "output_type": encode_type(self.output_type),
            "scope": self.scope_path,
            "behavior_version": self.behavior_version,
        }


@dataclass(frozen=True)
class ForEachRowOp:
    table: DataSlice
    scope: DataScope
    operations: tuple["Operation", ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": "for_each_row",
            "table": self.table.to_dict(),
            "scope": self.scope.path,
            "operations": [op.to_dict() for op in self.operations],
        }


CollectValue = Union[DataSlice, _GeneratedUUID]


@dataclass(frozen=True)
class CollectOp:
    collector_id: str
    fields: tuple[tuple[str, CollectValue], ...]
    scope_path: str

    @property
    def uuid_field(self) -> str | None:
        for name, value in self.fields:
            if value is GENERATED_UUID:
                return name
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": "collect",
            "collector": self.collector_id,
            "fields": [
                [name, "GENERATED_UUID" if value is GENERATED_UUID else value.to_dict()]
                for name, value in self.fields
            ],
            "scope": self.scope_path,
        }


@dataclass(frozen=True)
class ExportOp:
    name: str
    collector_id: str
    target: OpSpec
    primary_key_fields: tuple[str, ...]
    indexes: tuple[IndexSpec, ...] = ()
    setup_by_user: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": "export",
            "name": self.name,
            "collector": self.collector_id,
            "target": self.target.to_dict(),
            "primary_key": list(self.primary_key_fields),
            "indexes": [i.to_dict() for i in self.indexes],
            "setup_by_user": self.setup_by_user,
        }


Operation = Union[ImportOp, TransformOp, ForEachRowOp, CollectOp, ExportOp]


def walk_operations(operations: tuple[Operation, ...]):
    """Yield every operation, descending into ForEachRow blocks."""
    for op in operations:
        yield op
        if isinstance(op, ForEachRowOp):
            yield from walk_operations(op.operations)
