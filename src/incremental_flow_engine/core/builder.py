"""Flow builder: turns builder calls into an immutable operation graph."""

from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Sequence

from .auth import AuthRegistry, resolve_auth_refs
from .codec import fingerprint
from .component import Function, IndexSpec, Source, Target, TargetSchema
from .errors import (
    DefinitionError,
    InvalidCollectorEntryError,
    InvalidIndexConfigError,
    InvalidOperationError,
    ScopeViolationError,
    TypeMismatchError,
)
from .operations import (
    CollectOp,
    ExportOp,
    ForEachRowOp,
    ImportOp,
    Operation,
    OpSpec,
    TransformOp,
    walk_operations,
)
from .registry import ComponentRegistry
from .scope import GENERATED_UUID, DataCollector, DataScope, DataSlice
from .types import (
    UUID,
    FieldSchema,
    StructType,
    TableKind,
    TableType,
    VectorType,
)

CHANGE_DETECTION_MODES = ("auto", "full_scan", "native")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")


class FlowBuilder:
    """
    Records builder calls against a scope tree.

    Usage:
        builder = FlowBuilder("docs_index")
        docs = builder.add_source(OpSpec("source/in_memory", {"dataset": "docs"}), "docs")
        index = builder.root_scope.add_collector("doc_index")
        with docs.row() as doc:
            doc["summary"] = doc["content"].transform(OpSpec("function/template", {"template": "{0}"}))
            builder.collect(index, id=doc["id"], summary=doc["summary"])
        builder.export("doc_index", index, OpSpec("target/in_memory", {"store": "docs"}), ["id"])
        flow = builder.build()
    """

    def __init__(
        self,
        name: str,
        registry: ComponentRegistry | None = None,
        auth_registry: AuthRegistry | None = None,
    ):
        if not _NAME_RE.match(name):
            raise DefinitionError(f"Invalid flow name: {name!r}")
        self.name = name
        self.registry = registry or ComponentRegistry.get_instance()
        self.auth_registry = auth_registry or AuthRegistry.get_instance()
        self.root_scope = DataScope("root", self)
        self._scope_stack: list[DataScope] = [self.root_scope]
        self._ops_stack: list[list[Operation]] = [[]]
        self._imports: dict[str, ImportOp] = {}
        self._exports: dict[str, ExportOp] = {}
        self._collectors: dict[str, DataCollector] = {}
        self._counter = 0
        self._built = False

    @property
    def current_scope(self) -> DataScope:
        return self._scope_stack[-1]

    def _check_open(self) -> None:
        if self._built:
            raise DefinitionError(f"Flow '{self.name}' is already built")

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"_{prefix}_{self._counter}"

    def _component_class(self, spec: OpSpec, base: type) -> type:
        component_class = self.registry.get(spec.type)
        if component_class is None:
            raise InvalidOperationError(f"Unknown component type: {spec.type}")
        if not issubclass(component_class, base):
            raise InvalidOperationError(
                f"Component '{spec.type}' is not a {base.__name__}"
            )
        return component_class

    def _instantiate(self, spec: OpSpec, base: type, instance_id: str) -> Any:
        component_class = self._component_class(spec, base)
        config = resolve_auth_refs(spec.encoded_config(), self.auth_registry)
        try:
            return component_class(instance_id, config)
        except ValueError as e:
            raise InvalidOperationError(str(e)) from e

    def _check_visible(self, value: DataSlice, scope: DataScope) -> None:
        if not isinstance(value, DataSlice):
            raise TypeError(f"Expected a DataSlice, got {type(value).__name__}")
        if value.builder is not self:
            raise ScopeViolationError(f"Slice {value.describe()} belongs to another flow")
        if not scope.is_within(value.scope):
            raise ScopeViolationError(
                f"Slice {value.describe()} is not visible from scope '{scope.path}'"
            )
        if value.scope.is_root:
            raise ScopeViolationError(
                f"Import table {value.describe()} can only be consumed with row()"
            )

    # === Root-level operations ===

    def add_source(
        self,
        spec: OpSpec,
        name: str,
        refresh_interval: float | None = None,
        change_detection: str = "auto",
    ) -> DataSlice:
        """Declare an import. The source's KTable becomes root field `name`."""
        self._check_open()
        if not self.current_scope.is_root:
            raise ScopeViolationError(
                f"add_source('{name}') is only allowed in the root scope, "
                f"not '{self.current_scope.path}'"
            )
        if change_detection not in CHANGE_DETECTION_MODES:
            raise InvalidOperationError(
                f"change_detection must be one of {CHANGE_DETECTION_MODES}, got {change_detection!r}"
            )
        source = self._instantiate(spec, Source, name)
        if change_detection == "native" and not source.supports_diff():
            raise InvalidOperationError(
                f"Source '{spec.type}' has no native change feed; use 'auto' or 'full_scan'"
            )
        output_type = source.output_type()
        if not isinstance(output_type, TableType) or output_type.kind != TableKind.KTABLE:
            raise TypeMismatchError(
                f"Source '{spec.type}' must produce a KTable, got {output_type}"
            )

        value = DataSlice(self.root_scope, (name,), output_type, self)
        self.root_scope.insert(name, value)
        op = ImportOp(name, spec, output_type, refresh_interval, change_detection)
        self._imports[name] = op
        self._ops_stack[-1].append(op)
        return value

    def export(
        self,
        name: str,
        collector: DataCollector,
        target_spec: OpSpec,
        primary_key_fields: Sequence[str],
        secondary_indexes: Sequence[IndexSpec] = (),
        setup_by_user: bool = False,
    ) -> None:
        """Declare an export of a collector to a storage target."""
        self._check_open()
        if not self.current_scope.is_root:
            raise ScopeViolationError(
                f"export('{name}') is only allowed in the root scope, "
                f"not '{self.current_scope.path}'"
            )
        if name in self._exports:
            raise InvalidIndexConfigError(f"Duplicate export name: {name}")
        if self._collectors.get(collector.id) is not collector:
            raise ScopeViolationError(f"Collector '{collector.id}' belongs to another flow")
        self._component_class(target_spec, Target)

        if isinstance(primary_key_fields, str):
            primary_key_fields = [primary_key_fields]
        primary_key = tuple(primary_key_fields)
        if not primary_key:
            raise InvalidIndexConfigError(f"Export '{name}': primary_key_fields must not be empty")
        entry_type = collector.entry_type
        if entry_type is None:
            raise InvalidIndexConfigError(
                f"Export '{name}': collector '{collector.id}' never receives entries"
            )
        if len(set(primary_key)) != len(primary_key):
            raise InvalidIndexConfigError(f"Export '{name}': repeated primary key field")
        for key_field in primary_key:
            if entry_type.field(key_field) is None:
                raise InvalidIndexConfigError(
                    f"Export '{name}': primary key field '{key_field}' is not in "
                    f"collected entries {entry_type.names}"
                )

        indexes = tuple(secondary_indexes)
        for index in indexes:
            field_type = entry_type.field(index.field)
            if field_type is None:
                raise InvalidIndexConfigError(
                    f"Export '{name}': index field '{index.field}' is not in collected entries"
                )
            if index.metric is not None and not isinstance(field_type, VectorType):
                raise InvalidIndexConfigError(
                    f"Export '{name}': vector index on '{index.field}' requires a Vector field, "
                    f"got {field_type}"
                )

        op = ExportOp(name, collector.id, target_spec, primary_key, indexes, setup_by_user)
        self._exports[name] = op
        self._ops_stack[-1].append(op)

    # === Row-level operations ===

    def transform(self, spec: OpSpec, *inputs: DataSlice) -> DataSlice:
        """Apply a function to input slices, returning its output slice."""
        self._check_open()
        scope = self.current_scope
        if scope.is_root:
            raise ScopeViolationError(
                f"transform('{spec.type}') needs a row scope; open one with row()"
            )
        for value in inputs:
            self._check_visible(value, scope)

        function = self._instantiate(spec, Function, spec.type)
        try:
            output_type = function.analyze(*(value.type for value in inputs))
        except TypeError as e:
            raise TypeMismatchError(f"{spec.type}: {e}") from e

        output_field = self._next_id(spec.type.rsplit("/", 1)[-1])
        value = DataSlice(scope, (output_field,), output_type, self)
        scope.insert(output_field, value)
        self._ops_stack[-1].append(TransformOp(
            spec=spec,
            inputs=tuple(inputs),
            output_field=output_field,
            output_type=output_type,
            scope_path=scope.path,
            behavior_version=type(function).behavior_version,
            cache=type(function).cache,
        ))
        return value

    @contextmanager
    def row(self, table: DataSlice) -> Iterator[DataScope]:
        """
        Open a child scope evaluated once per row of a table slice.

        The child's operations are closed and merged into the parent on
        every exit path.
        """
        self._check_open()
        if not isinstance(table, DataSlice):
            raise TypeError(f"Expected a DataSlice, got {type(table).__name__}")
        if not isinstance(table.type, TableType):
            raise TypeMismatchError(
                f"row() requires a Table slice, {table.describe()} is {table.type}"
            )
        parent = self.current_scope
        if table.builder is not self or not parent.is_within(table.scope):
            raise ScopeViolationError(
                f"Slice {table.describe()} is not visible from scope '{parent.path}'"
            )
        if table.scope.is_root and not parent.is_root:
            raise ScopeViolationError(
                f"Import table {table.describe()} can only be iterated from the root scope"
            )

        child_name = table.path[-1]
        taken = {c.name for c in parent.children}
        if child_name in taken:
            n = 2
            while f"{child_name}#{n}" in taken:
                n += 1
            child_name = f"{child_name}#{n}"
        child = DataScope(child_name, self, parent, row_of=table)
        for f in table.type.row.fields:
            child.insert(f.name, DataSlice(child, (f.name,), f.type, self))
        parent.children.append(child)

        self._scope_stack.append(child)
        self._ops_stack.append([])
        try:
            yield child
        finally:
            operations = self._ops_stack.pop()
            self._scope_stack.pop()
            self._ops_stack[-1].append(ForEachRowOp(table, child, tuple(operations)))

    def add_collector(self, scope: DataScope | None = None, name: str | None = None) -> DataCollector:
        self._check_open()
        scope = scope or self.current_scope
        if scope is not self.current_scope:
            raise ScopeViolationError(
                f"Collectors can only be added to the scope being built ('{self.current_scope.path}')"
            )
        collector_id = name or self._next_id("collector")
        if collector_id in self._collectors:
            raise InvalidOperationError(f"Duplicate collector name: {collector_id}")
        collector = DataCollector(collector_id, scope)
        self._collectors[collector_id] = collector
        scope.collectors[collector_id] = collector
        return collector

    def collect(self, collector: DataCollector, **fields: Any) -> None:
        """
        Append one entry per scope instance to a collector.

        Values are slices visible from the current scope, or GENERATED_UUID
        for at most one field.
        """
        self._check_open()
        scope = self.current_scope
        if scope.is_root:
            raise ScopeViolationError("collect() needs a row scope; open one with row()")
        if self._collectors.get(collector.id) is not collector:
            raise ScopeViolationError(f"Collector '{collector.id}' belongs to another flow")
        if not scope.is_within(collector.scope):
            raise ScopeViolationError(
                f"Collector '{collector.id}' of scope '{collector.scope.path}' "
                f"is not reachable from '{scope.path}'"
            )
        if not fields:
            raise InvalidCollectorEntryError(f"Empty entry for collector '{collector.id}'")

        uuid_fields = [name for name, value in fields.items() if value is GENERATED_UUID]
        if len(uuid_fields) > 1:
            raise InvalidCollectorEntryError(
                f"Collector '{collector.id}': at most one generated UUID field, got {uuid_fields}"
            )

        schema = []
        for name, value in fields.items():
            if value is GENERATED_UUID:
                schema.append(FieldSchema(name, UUID))
                continue
            self._check_visible(value, scope)
            schema.append(FieldSchema(name, value.type))
        entry_type = StructType(tuple(schema))
        uuid_field = uuid_fields[0] if uuid_fields else None

        if collector.entry_type is None:
            collector.entry_type = entry_type
            collector.uuid_field = uuid_field
        elif collector.entry_type != entry_type or collector.uuid_field != uuid_field:
            raise TypeMismatchError(
                f"Collector '{collector.id}' collects {collector.entry_type}, got {entry_type}"
            )

        self._ops_stack[-1].append(CollectOp(collector.id, tuple(fields.items()), scope.path))

    def build(self) -> "Flow":
        """Close the graph. The builder rejects further calls afterwards."""
        self._check_open()
        if len(self._scope_stack) != 1:
            raise DefinitionError(f"Flow '{self.name}': row() block still open")
        self._built = True
        return Flow(
            name=self.name,
            root_scope=self.root_scope,
            operations=tuple(self._ops_stack[0]),
            imports=MappingProxyType(dict(self._imports)),
            exports=MappingProxyType(dict(self._exports)),
            collectors=MappingProxyType(dict(self._collectors)),
        )


@dataclass(frozen=True, eq=False)
class Flow:
    """A named, immutable operation graph plus its scope tree."""
    name: str
    root_scope: DataScope
    operations: tuple[Operation, ...]
    imports: Mapping[str, ImportOp]
    exports: Mapping[str, ExportOp]
    collectors: Mapping[str, DataCollector]

    def row_operations(self, import_name: str) -> tuple[ForEachRowOp, ...]:
        """Top-level row blocks iterating an import."""
        return tuple(
            op for op in self.operations
            if isinstance(op, ForEachRowOp) and op.table.path == (import_name,)
        )

    def logic_fingerprint(self, import_name: str) -> str:
        """Hash of everything that decides the entries an import row produces."""
        row_ops = self.row_operations(import_name)
        collector_ids = sorted({
            op.collector_id for op in walk_operations(row_ops) if isinstance(op, CollectOp)
        })
        imported = self.imports[import_name].to_dict()
        return fingerprint({
            "import": {"spec": imported["spec"], "output_type": imported["output_type"]},
            "operations": [op.to_dict() for op in row_ops],
            "collectors": [self.collectors[c].to_dict() for c in collector_ids],
        })

    def target_schema(self, export_name: str) -> TargetSchema:
        export = self.exports[export_name]
        entry_type = self.collectors[export.collector_id].entry_type
        if entry_type is None:
            raise InvalidIndexConfigError(
                f"Export '{export_name}': collector '{export.collector_id}' never receives entries"
            )
        key_fields = [f for k in export.primary_key_fields for f in entry_type.fields if f.name == k]
        value_fields = [f for f in entry_type.fields if f.name not in export.primary_key_fields]
        return TargetSchema(key_fields, value_fields, list(export.indexes))

    def schema_snapshot(self, export_name: str) -> dict[str, Any]:
        """What setup compares to decide whether a target must be recreated."""
        export = self.exports[export_name]
        return {
            "target": export.target.to_dict(),
            "schema": self.target_schema(export_name).to_dict(),
            "setup_by_user": export.setup_by_user,
        }

    def auth_keys(self) -> set[str]:
        keys: set[str] = set()
        for op in walk_operations(self.operations):
            if isinstance(op, (ImportOp, TransformOp)):
                keys |= op.spec.auth_keys()
            elif isinstance(op, ExportOp):
                keys |= op.target.auth_keys()
        return keys

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "operations": [op.to_dict() for op in self.operations],
            "collectors": {cid: c.to_dict() for cid, c in self.collectors.items()},
        }

    def describe(self) -> str:
        """Human-readable scope tree, used by `show`."""
        lines = [f"Flow: {self.name}"]
        self._describe_scope(self.root_scope, self.operations, 1, lines)
        if self.exports:
            lines.append("  exports:")
            for export in self.exports.values():
                indexes = ", ".join(
                    f"{i.field}({i.metric.value})" if i.metric else i.field
                    for i in export.indexes
                )
                line = (
                    f"    {export.name}: {export.collector_id} -> {export.target.type} "
                    f"key={list(export.primary_key_fields)}"
                )
                if indexes:
                    line += f" indexes=[{indexes}]"
                if export.setup_by_user:
                    line += " (setup by user)"
                lines.append(line)
        return "\n".join(lines)

    def _describe_scope(self, scope: DataScope, operations, depth: int, lines: list[str]) -> None:
        pad = "  " * depth
        for name, value in scope.fields().items():
            if name.startswith("_"):
                continue
            lines.append(f"{pad}{name}: {value.type}")
        for collector in scope.collectors.values():
            entry = collector.entry_type if collector.entry_type else "(empty)"
            lines.append(f"{pad}[collector {collector.id}] {entry}")
        for op in operations:
            if isinstance(op, TransformOp):
                args = ", ".join(v.describe() for v in op.inputs)
                lines.append(f"{pad}{op.output_field} = {op.spec.type}({args}): {op.output_type}")
            elif isinstance(op, CollectOp):
                names = ", ".join(name for name, _ in op.fields)
                lines.append(f"{pad}collect -> {op.collector_id} ({names})")
            elif isinstance(op, ForEachRowOp):
                lines.append(f"{pad}for each row of {op.table.describe()}:")
                self._describe_scope(op.scope, op.operations, depth + 1, lines)
