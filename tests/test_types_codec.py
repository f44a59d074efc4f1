"""Data types, value encoding and stable identities."""

import uuid
from datetime import date, datetime, timezone

import pytest

from incremental_flow_engine.core.codec import (
    fingerprint,
    from_jsonable,
    generate_entry_uuid,
    key_str,
    to_jsonable,
)
from incremental_flow_engine.core.types import (
    FLOAT32,
    INT64,
    STR,
    SimilarityMetric,
    TableKind,
    VectorType,
    decode_type,
    encode_type,
    ktable,
    ltable,
    parse_scalar,
    struct_type,
)


def test_ktable_key_is_first_field():
    table = ktable([("filename", STR), ("size", INT64)])
    assert table.kind == TableKind.KTABLE
    assert table.key_field == "filename"
    assert table.row.names == ["filename", "size"]


def test_nested_type_encoding_is_reversible():
    t = ltable([
        ("meta", struct_type([("title", STR), ("year", parse_scalar("Int64?"))])),
        ("embedding", VectorType(FLOAT32, 3, SimilarityMetric.L2_DISTANCE)),
    ])
    assert decode_type(encode_type(t)) == t


def test_parse_scalar_rejects_unknown_names():
    assert parse_scalar("Str") == STR
    assert parse_scalar("Int64?").nullable
    with pytest.raises(ValueError):
        parse_scalar("Varchar")


def test_jsonable_preserves_non_json_values():
    value = {
        "id": uuid.UUID("12345678-1234-5678-1234-567812345678"),
        "raw": b"\x00\xff",
        "span": (3, 9),
        "day": date(2024, 5, 1),
        "at": datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
        "tags": ["a", "b"],
    }
    assert from_jsonable(to_jsonable(value)) == value


def test_fingerprint_ignores_dict_order():
    assert fingerprint({"a": 1, "b": [1, 2]}) == fingerprint({"b": [1, 2], "a": 1})
    assert fingerprint({"a": 1}) != fingerprint({"a": 2})


def test_key_str_distinguishes_types():
    assert key_str(1) != key_str("1")
    assert key_str(("a", 1)) != key_str(["a", 1])


def test_generated_uuid_is_deterministic():
    first = generate_entry_uuid(["doc1", (0, 8), "hello"])
    assert first == generate_entry_uuid(["doc1", (0, 8), "hello"])
    assert first != generate_entry_uuid(["doc1", (0, 8), "hello!"])
    assert isinstance(first, uuid.UUID)


def test_generated_uuid_depends_on_key_path():
    assert generate_entry_uuid(["hello"], ("doc1", (0, 5))) != generate_entry_uuid(["hello"], ("doc2", (0, 5)))
    assert generate_entry_uuid(["hello"], ("doc1",)) == generate_entry_uuid(["hello"], ("doc1",))
