"""Data type system for values flowing through a flow.

Every slice in a flow has one of four shapes:

    ScalarType  - a single value of a ScalarKind
    StructType  - ordered, uniquely named fields
    TableType   - rows of a StructType; KTable rows are keyed by their first
                  field, LTable rows by their position
    VectorType  - fixed or variable length vector with a similarity metric

Types are frozen dataclasses so a slice's type can never change after it
is assigned. `encode_type` turns any type into a plain dict, used for
schema snapshots and fingerprints.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Union


class ScalarKind(str, Enum):
    """Kinds of scalar values."""
    STR = "Str"
    BYTES = "Bytes"
    BOOL = "Bool"
    INT64 = "Int64"
    FLOAT32 = "Float32"
    FLOAT64 = "Float64"
    UUID = "Uuid"
    JSON = "Json"
    DATE = "Date"
    OFFSET_DATETIME = "OffsetDateTime"
    RANGE = "Range"


class SimilarityMetric(str, Enum):
    """Similarity metrics for vector fields and indexes."""
    COSINE_SIMILARITY = "cosine_similarity"
    L2_DISTANCE = "l2_distance"
    INNER_PRODUCT = "inner_product"


class TableKind(str, Enum):
    KTABLE = "KTable"
    LTABLE = "LTable"


@dataclass(frozen=True)
class ScalarType:
    kind: ScalarKind
    nullable: bool = False

    def __str__(self) -> str:
        return f"{self.kind.value}{'?' if self.nullable else ''}"


@dataclass(frozen=True)
class FieldSchema:
    name: str
    type: "DataType"


@dataclass(frozen=True)
class StructType:
    fields: tuple[FieldSchema, ...]

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise ValueError(f"Duplicate struct field: {f.name}")
            seen.add(f.name)

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.fields]

    def field(self, name: str) -> "DataType | None":
        for f in self.fields:
            if f.name == name:
                return f.type
        return None

    def __str__(self) -> str:
        inner = ", ".join(f"{f.name}: {f.type}" for f in self.fields)
        return f"Struct({inner})"


@dataclass(frozen=True)
class TableType:
    row: StructType
    kind: TableKind = TableKind.LTABLE

    @property
    def key_field(self) -> str | None:
        """Name of the row key field (KTable only)."""
        if self.kind == TableKind.KTABLE and self.row.fields:
            return self.row.fields[0].name
        return None

    def __str__(self) -> str:
        return f"{self.kind.value}({self.row})"


@dataclass(frozen=True)
class VectorType:
    element: ScalarType
    dimension: int | None = None
    metric: SimilarityMetric = SimilarityMetric.COSINE_SIMILARITY

    def __str__(self) -> str:
        dim = self.dimension if self.dimension is not None else "*"
        return f"Vector[{self.element}; {dim}]"


DataType = Union[ScalarType, StructType, TableType, VectorType]


# Shorthands for the common scalar types
STR = ScalarType(ScalarKind.STR)
BYTES = ScalarType(ScalarKind.BYTES)
BOOL = ScalarType(ScalarKind.BOOL)
INT64 = ScalarType(ScalarKind.INT64)
FLOAT32 = ScalarType(ScalarKind.FLOAT32)
FLOAT64 = ScalarType(ScalarKind.FLOAT64)
UUID = ScalarType(ScalarKind.UUID)
JSON = ScalarType(ScalarKind.JSON)
DATE = ScalarType(ScalarKind.DATE)
OFFSET_DATETIME = ScalarType(ScalarKind.OFFSET_DATETIME)
RANGE = ScalarType(ScalarKind.RANGE)


def struct_type(fields: Iterable[tuple[str, DataType]] | dict[str, DataType]) -> StructType:
    """Build a StructType from (name, type) pairs or an ordered dict."""
    items = fields.items() if isinstance(fields, dict) else fields
    return StructType(tuple(FieldSchema(name, t) for name, t in items))


def ktable(fields: Iterable[tuple[str, DataType]] | dict[str, DataType]) -> TableType:
    """Keyed table; the first field is the row key."""
    return TableType(struct_type(fields), TableKind.KTABLE)


def ltable(fields: Iterable[tuple[str, DataType]] | dict[str, DataType]) -> TableType:
    """Ordered table; rows are keyed by position."""
    return TableType(struct_type(fields), TableKind.LTABLE)


def encode_type(t: DataType) -> dict[str, Any]:
    """Encode a type as a plain JSON-serializable dict."""
    if isinstance(t, ScalarType):
        encoded: dict[str, Any] = {"kind": t.kind.value}
        if t.nullable:
            encoded["nullable"] = True
        return encoded
    if isinstance(t, StructType):
        return {
            "kind": "Struct",
            "fields": [{"name": f.name, "type": encode_type(f.type)} for f in t.fields],
        }
    if isinstance(t, TableType):
        return {"kind": t.kind.value, "row": encode_type(t.row)}
    if isinstance(t, VectorType):
        return {
            "kind": "Vector",
            "element": encode_type(t.element),
            "dimension": t.dimension,
            "metric": t.metric.value,
        }
    raise TypeError(f"Not a data type: {t!r}")


def decode_type(data: dict[str, Any]) -> DataType:
    """Inverse of encode_type."""
    kind = data["kind"]
    if kind == "Struct":
        return StructType(tuple(
            FieldSchema(f["name"], decode_type(f["type"])) for f in data["fields"]
        ))
    if kind in (TableKind.KTABLE.value, TableKind.LTABLE.value):
        row = decode_type(data["row"])
        assert isinstance(row, StructType)
        return TableType(row, TableKind(kind))
    if kind == "Vector":
        element = decode_type(data["element"])
        assert isinstance(element, ScalarType)
        return VectorType(element, data.get("dimension"), SimilarityMetric(data["metric"]))
    return ScalarType(ScalarKind(kind), nullable=data.get("nullable", False))


def parse_scalar(name: str) -> ScalarType:
    """Parse a scalar type name as written in configs: "Str", "Int64?"."""
    nullable = name.endswith("?")
    try:
        kind = ScalarKind(name.rstrip("?"))
    except ValueError:
        raise ValueError(f"Unknown scalar type: {name!r}") from None
    return ScalarType(kind, nullable)
