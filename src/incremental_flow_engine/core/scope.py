"""Data scopes, slices and collectors (definition-time model)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, TYPE_CHECKING

from .errors import DuplicateFieldError, ScopeViolationError, TypeMismatchError
from .types import DataType, StructType

if TYPE_CHECKING:
    from .builder import FlowBuilder
    from .operations import OpSpec


class _GeneratedUUID:
    """Marker for a collected field whose value is a generated UUID."""

    def __repr__(self) -> str:
        return "GENERATED_UUID"


GENERATED_UUID = _GeneratedUUID()


@dataclass(frozen=True, eq=False)
class DataSlice:
    """
    Typed reference to a value that only exists at execution time.

    A slice is located by the scope whose instance holds the value and a
    path inside that instance: ("content",) for a field, ("meta", "title")
    for a projection of a struct field.
    """
    scope: "DataScope"
    path: tuple[str, ...]
    type: DataType
    builder: "FlowBuilder" = field(repr=False)

    def __getitem__(self, name: str) -> "DataSlice":
        """Project a sub-field of a struct-typed slice."""
        if not isinstance(self.type, StructType):
            raise TypeMismatchError(
                f"Cannot project field '{name}' from {self.describe()}: type is {self.type}, not Struct"
            )
        sub_type = self.type.field(name)
        if sub_type is None:
            raise TypeMismatchError(f"{self.describe()} has no field '{name}'")
        return DataSlice(self.scope, self.path + (name,), sub_type, self.builder)

    def transform(self, spec: "OpSpec", *args: "DataSlice") -> "DataSlice":
        """Apply a function with this slice as the first input."""
        return self.builder.transform(spec, self, *args)

    def row(self):
        """Open a child scope iterating the rows of this table slice."""
        return self.builder.row(self)

    def describe(self) -> str:
        return f"{self.scope.path}.{'.'.join(self.path)}"

    def to_dict(self) -> dict[str, Any]:
        return {"scope": self.scope.path, "path": list(self.path)}


@dataclass(eq=False)
class DataCollector:
    """
    Accumulates entries for export.

    The first collect() fixes the entry shape; at most one field may be the
    generated UUID.
    """
    id: str
    scope: "DataScope"
    entry_type: StructType | None = None
    uuid_field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        from .types import encode_type
        return {
            "id": self.id,
            "scope": self.scope.path,
            "entry_type": encode_type(self.entry_type) if self.entry_type else None,
            "uuid_field": self.uuid_field,
        }


class DataScope:
    """
    A node in the scope tree: write-once fields plus collectors.

    Field names are unique and never overridden. `scope[name] = slice`
    inserts, and fails with DuplicateFieldError if the name exists.
    """

    def __init__(
        self,
        name: str,
        builder: "FlowBuilder",
        parent: "DataScope | None" = None,
        row_of: DataSlice | None = None,
    ):
        self.name = name
        self.builder = builder
        self.parent = parent
        self.row_of = row_of
        self.children: list[DataScope] = []
        self.collectors: dict[str, DataCollector] = {}
        self._fields: dict[str, DataSlice] = {}

    @property
    def path(self) -> str:
        if self.parent is None:
            return self.name
        return f"{self.parent.path}/{self.name}"

    @property
    def is_root(self) -> bool:
        return self.parent is None

    def ancestors(self) -> Iterator["DataScope"]:
        """Yield this scope, then its parent, up to the root."""
        scope: DataScope | None = self
        while scope is not None:
            yield scope
            scope = scope.parent

    def is_within(self, other: "DataScope") -> bool:
        """True if `other` is this scope or one of its ancestors."""
        return any(s is other for s in self.ancestors())

    def insert(self, name: str, value: DataSlice) -> DataSlice:
        """Insert a field if absent; duplicates fail."""
        if name in self._fields:
            raise DuplicateFieldError(self.path, name)
        self._fields[name] = value
        return value

    def __setitem__(self, name: str, value: DataSlice) -> None:
        if not isinstance(value, DataSlice):
            raise TypeError(f"Scope fields must be DataSlices, got {type(value).__name__}")
        if self.builder.current_scope is not self:
            raise ScopeViolationError(
                f"Cannot assign '{name}' to scope '{self.path}' while building '{self.builder.current_scope.path}'"
            )
        if not self.is_within(value.scope):
            raise ScopeViolationError(
                f"Slice {value.describe()} is not visible from scope '{self.path}'"
            )
        self.insert(name, value)

    def __getitem__(self, name: str) -> DataSlice:
        try:
            return self._fields[name]
        except KeyError:
            raise KeyError(f"Scope '{self.path}' has no field '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def fields(self) -> dict[str, DataSlice]:
        return dict(self._fields)

    def add_collector(self, name: str | None = None) -> DataCollector:
        return self.builder.add_collector(self, name)

    def __repr__(self) -> str:
        return f"DataScope({self.path!r})"
