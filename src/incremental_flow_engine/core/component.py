"""Base component classes and collaborator contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, TYPE_CHECKING

from .types import DataType, FieldSchema, SimilarityMetric, TableType, encode_type

if TYPE_CHECKING:
    from .context import RowContext


@dataclass
class InputSpec:
    """Specification for a positional function input."""
    name: str
    type: str  # e.g., "Str", "Table", "any"
    description: str = ""


@dataclass
class ConfigSpec:
    """Specification for a component configuration option."""
    type: str  # "string", "integer", "boolean", "float", "list", "dict", "auth"
    required: bool = False
    default: Any = None
    description: str = ""
    choices: list[Any] | None = None  # Allowed values


@dataclass
class ComponentManifest:
    """Self-description of a component's interface."""
    type: str  # e.g., "source/in_memory", "function/template"
    description: str
    config: dict[str, ConfigSpec] = field(default_factory=dict)
    inputs: list[InputSpec] = field(default_factory=list)
    category: Literal["source", "function", "target"] = "function"


class Component(ABC):
    """
    Base class for all flow components.

    Components are the collaborators a flow talks to. Each component:
    - Declares its configuration via describe()
    - Validates its configuration on construction
    - Implements the contract of its category (Source, Function, Target)

    The engine never assumes what a component does - it asks the component
    via describe() and the category contract.
    """

    def __init__(self, instance_id: str, config: dict[str, Any]):
        """
        Initialize component with instance ID and configuration.

        Args:
            instance_id: Identifier of the operation this component serves
            config: Configuration values with auth references resolved
        """
        self.instance_id = instance_id
        self.config = config
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration against manifest."""
        manifest = self.describe()
        for name, spec in manifest.config.items():
            if spec.required and name not in self.config:
                if spec.default is None:
                    raise ValueError(
                        f"Component {self.instance_id}: missing required config '{name}'"
                    )
            if name in self.config and spec.choices:
                if self.config[name] not in spec.choices:
                    raise ValueError(
                        f"Component {self.instance_id}: config '{name}' must be one of {spec.choices}"
                    )

    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value with fallback to spec default."""
        if key in self.config:
            return self.config[key]
        manifest = self.describe()
        if key in manifest.config:
            return manifest.config[key].default
        return default

    @classmethod
    @abstractmethod
    def describe(cls) -> ComponentManifest:
        """Return the component's manifest describing its interface."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.instance_id!r})"


# === Sources ===

@dataclass
class SourceRow:
    """A value read from a source, with an optional version token."""
    value: dict[str, Any]
    version: str | None = None


@dataclass
class SourceDiff:
    """Keys changed since a cursor, plus the cursor to use next time."""
    added: set[Any] = field(default_factory=set)
    updated: set[Any] = field(default_factory=set)
    removed: set[Any] = field(default_factory=set)
    cursor: str | None = None


class Source(Component):
    """
    A keyed collection of rows.

    Contract:
        output_type() -> KTable type; the first row field is the key
        list_keys()   -> all current keys
        read(key)     -> SourceRow (value holds the non-key fields), or None
                         if the key no longer exists
        diff(since)   -> optional; keys changed since a cursor. since=None
                         means "everything", reported as added.
    """

    @abstractmethod
    def output_type(self) -> TableType:
        pass

    @abstractmethod
    async def list_keys(self) -> Iterable[Any]:
        pass

    @abstractmethod
    async def read(self, key: Any) -> SourceRow | None:
        pass

    async def diff(self, since: str | None) -> SourceDiff:
        raise NotImplementedError(f"{type(self).__name__} has no native change feed")

    @classmethod
    def supports_diff(cls) -> bool:
        return cls.diff is not Source.diff


# === Functions ===

class Function(Component):
    """
    A pure transformation of typed input values into one typed value.

    Must be safe to retry: the same inputs always produce the same output.
    Set `cache = True` to memoize outputs per distinct input, and bump
    `behavior_version` whenever the implementation changes its output.
    """

    cache: bool = False
    behavior_version: int | None = None

    @abstractmethod
    def analyze(self, *input_types: DataType) -> DataType:
        """Return the output type for the given input types.

        Raise TypeError when the inputs are not acceptable.
        """
        pass

    @abstractmethod
    async def execute(self, inputs: list[Any], context: "RowContext") -> Any:
        pass


# === Targets ===

@dataclass(frozen=True)
class IndexSpec:
    """Secondary index on a collected field. A metric makes it a vector index."""
    field: str
    metric: SimilarityMetric | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "metric": self.metric.value if self.metric else None}


@dataclass
class TargetSchema:
    """Shape of the rows a target stores."""
    key_fields: list[FieldSchema]
    value_fields: list[FieldSchema]
    indexes: list[IndexSpec] = field(default_factory=list)

    @property
    def key_names(self) -> list[str]:
        return [f.name for f in self.key_fields]

    @property
    def value_names(self) -> list[str]:
        return [f.name for f in self.value_fields]

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_fields": [{"name": f.name, "type": encode_type(f.type)} for f in self.key_fields],
            "value_fields": [{"name": f.name, "type": encode_type(f.type)} for f in self.value_fields],
            "indexes": [i.to_dict() for i in self.indexes],
        }


class Target(Component):
    """
    External storage kept in sync with collected entries.

    upsert() and delete() must be idempotent: the engine delivers at least
    once and may re-send a batch after a failure.
    """

    async def setup(self, schema: TargetSchema) -> None:
        """Create the backing storage. Default: nothing to create."""
        return None

    @abstractmethod
    async def upsert(self, key: Any, fields: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def delete(self, key: Any) -> None:
        pass

    async def drop(self) -> None:
        """Remove the backing storage. Default: nothing to remove."""
        return None

    async def apply(
        self,
        deletes: list[Any],
        upserts: list[tuple[Any, dict[str, Any]]],
    ) -> None:
        """Apply one batch. Deletes go first."""
        for key in deletes:
            await self.delete(key)
        for key, fields in upserts:
            await self.upsert(key, fields)
