"""Error types and per-run error records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class DataflowError(Exception):
    """Base exception for all flow engine errors."""
    pass


# === Definition-time errors (raised while building a flow) ===

class DefinitionError(DataflowError):
    """Flow definition is invalid. Always fatal at build time."""
    pass


class DuplicateFieldError(DefinitionError):
    """A field name was assigned twice in the same scope."""

    def __init__(self, scope: str, field_name: str):
        super().__init__(f"Field '{field_name}' already exists in scope '{scope}'")
        self.scope = scope
        self.field_name = field_name


class ScopeViolationError(DefinitionError):
    """An operation was declared in, or referenced data from, the wrong scope."""
    pass


class TypeMismatchError(DefinitionError):
    """An operation was applied to a slice of an incompatible type."""
    pass


class InvalidCollectorEntryError(DefinitionError):
    """A collected entry is malformed (e.g. more than one generated UUID field)."""
    pass


class InvalidIndexConfigError(DefinitionError):
    """Export primary key or index configuration is invalid."""
    pass


class InvalidOperationError(DefinitionError):
    """An operation spec references an unknown or unusable component."""
    pass


# === Execution-time errors ===

class SourceError(DataflowError):
    """Reading from a source failed. Isolated to one key (or one import)."""

    def __init__(self, message: str, import_name: str, key: Any = None, cause: Exception | None = None):
        super().__init__(message)
        self.import_name = import_name
        self.key = key
        self.cause = cause


class TransformError(DataflowError):
    """A function failed while evaluating a row. Isolated to that row."""

    def __init__(
        self,
        message: str,
        function_type: str,
        key_path: tuple = (),
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.function_type = function_type
        self.key_path = key_path
        self.cause = cause


class DuplicateKeyError(DataflowError):
    """Two collected entries share a primary key. Fatal for that export only."""

    def __init__(self, export_name: str, key: Any):
        super().__init__(f"Export '{export_name}': duplicate primary key {key!r}")
        self.export_name = export_name
        self.key = key


class StorageError(DataflowError):
    """A storage target rejected a batch. Recorded state is not advanced."""

    def __init__(self, message: str, export_name: str, cause: Exception | None = None):
        super().__init__(message)
        self.export_name = export_name
        self.cause = cause


class AuthEntryNotFoundError(DataflowError):
    """An auth entry key could not be resolved."""

    def __init__(self, key: str):
        super().__init__(f"Auth entry not found: {key!r}")
        self.key = key


class SetupConfirmationRequired(DataflowError):
    """Setup would drop and recreate targets; caller must confirm."""

    def __init__(self, flow_name: str, export_names: list[str]):
        super().__init__(
            f"Flow '{flow_name}': exports {export_names} would be dropped or "
            f"recreated; confirm to proceed"
        )
        self.flow_name = flow_name
        self.export_names = export_names


class SetupRequiredError(DataflowError):
    """An update was requested for an export that was never set up."""
    pass


@dataclass
class ErrorRecord:
    """Record of an error that occurred during an update run."""
    error_type: str
    message: str
    flow: str | None = None
    import_name: str | None = None
    export_name: str | None = None
    key: Any = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: Exception, **kwargs: Any) -> "ErrorRecord":
        return cls(error_type=type(exc).__name__, message=str(exc), **kwargs)
