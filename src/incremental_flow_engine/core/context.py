"""Per-row execution context with hierarchical scoping."""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from .scope import DataScope, DataSlice


class RowContext:
    """
    One scope instance during evaluation.

    The import row is the outermost context; every nested ForEachRow row
    gets a child context. Slices resolve by walking up the parent chain to
    the context of the scope that owns them.
    """

    def __init__(
        self,
        scope: "DataScope",
        values: dict[str, Any] | None = None,
        parent: "RowContext | None" = None,
        key: Any = None,
        flow_name: str | None = None,
        import_name: str | None = None,
    ):
        self.scope = scope
        self.key = key
        self._parent = parent
        self._values: dict[str, Any] = values or {}
        self._flow_name = flow_name
        self._import_name = import_name

    @property
    def parent(self) -> "RowContext | None":
        return self._parent

    @property
    def flow_name(self) -> str | None:
        """Get the flow name, walking up parent chain if needed."""
        if self._flow_name is not None:
            return self._flow_name
        if self._parent is not None:
            return self._parent.flow_name
        return None

    @property
    def import_name(self) -> str | None:
        """Get the import name, walking up parent chain if needed."""
        if self._import_name is not None:
            return self._import_name
        if self._parent is not None:
            return self._parent.import_name
        return None

    @property
    def key_path(self) -> tuple[Any, ...]:
        """Row keys from the import row down to this row."""
        if self._parent is None:
            return (self.key,)
        return self._parent.key_path + (self.key,)

    def child(self, scope: "DataScope", values: dict[str, Any], key: Any) -> "RowContext":
        """Create a child context for one row of a nested table."""
        return RowContext(scope, values, parent=self, key=key)

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def resolve(self, value: "DataSlice") -> Any:
        """Materialize a slice: find its scope instance, then follow its path."""
        ctx: RowContext | None = self
        while ctx is not None and ctx.scope is not value.scope:
            ctx = ctx._parent
        if ctx is None:
            raise LookupError(f"No instance of scope '{value.scope.path}' for {value.describe()}")

        head, *rest = value.path
        if head not in ctx._values:
            raise LookupError(f"{value.describe()} has not been computed")
        result = ctx._values[head]
        for part in rest:
            if result is None:
                return None
            if not isinstance(result, dict):
                raise LookupError(
                    f"{value.describe()}: cannot take field '{part}' of a {type(result).__name__}"
                )
            result = result.get(part)
        return result

    def all_values(self) -> dict[str, Any]:
        """Values visible from this context, nearest scope winning (for debugging)."""
        result = {}
        if self._parent:
            result.update(self._parent.all_values())
        result.update(self._values)
        return result
