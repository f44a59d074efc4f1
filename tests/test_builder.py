"""Flow definition: scopes, type checking and definition errors."""

import pytest

from incremental_flow_engine.core import (
    GENERATED_UUID,
    DefinitionError,
    DuplicateFieldError,
    FlowBuilder,
    FlowRegistry,
    IndexSpec,
    InvalidCollectorEntryError,
    InvalidIndexConfigError,
    InvalidOperationError,
    OpSpec,
    ScopeViolationError,
    SimilarityMetric,
    TypeMismatchError,
    register_flow,
)
from incremental_flow_engine.core.types import VectorType

from tests.fixtures.flows import build_upper_flow

SOURCE = OpSpec("source/in_memory", {"dataset": "docs"})
TARGET = OpSpec("target/in_memory", {"store": "out"})
UPPER = OpSpec("function/upper")


def test_field_names_are_write_once():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    with docs.row() as doc:
        doc["text"] = doc["content"].transform(UPPER)
        with pytest.raises(DuplicateFieldError):
            doc["text"] = doc["content"].transform(UPPER)
        with pytest.raises(DuplicateFieldError):
            doc["content"] = doc["text"]


def test_duplicate_import_name():
    builder = FlowBuilder("f")
    builder.add_source(SOURCE, "docs")
    with pytest.raises(DuplicateFieldError):
        builder.add_source(SOURCE, "docs")


def test_transform_needs_row_scope():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    with pytest.raises(ScopeViolationError):
        docs.transform(UPPER)


def test_slice_not_visible_outside_its_row_block():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    notes = builder.add_source(OpSpec("source/in_memory", {"dataset": "notes"}), "notes")
    with docs.row() as doc:
        content = doc["content"]
    with notes.row():
        with pytest.raises(ScopeViolationError):
            content.transform(UPPER)


def test_import_table_iterated_only_from_root():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    notes = builder.add_source(OpSpec("source/in_memory", {"dataset": "notes"}), "notes")
    with docs.row():
        with pytest.raises(ScopeViolationError):
            with notes.row():
                pass


def test_function_rejects_input_type():
    builder = FlowBuilder("f")
    source = OpSpec("source/in_memory", {"dataset": "nums", "fields": {"n": "Int64"}})
    nums = builder.add_source(source, "nums")
    with nums.row() as num:
        with pytest.raises(TypeMismatchError):
            num["n"].transform(OpSpec("function/split_text"))


def test_row_requires_table():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    with docs.row() as doc:
        with pytest.raises(TypeMismatchError):
            with doc["content"].row():
                pass


def test_unknown_component_and_bad_config():
    builder = FlowBuilder("f")
    with pytest.raises(InvalidOperationError):
        builder.add_source(OpSpec("source/nope"), "docs")
    docs = builder.add_source(SOURCE, "docs")
    with docs.row() as doc:
        with pytest.raises(InvalidOperationError):
            doc["content"].transform(OpSpec("function/template"))
        with pytest.raises(InvalidOperationError):
            doc["content"].transform(OpSpec("target/in_memory", {"store": "x"}))


def test_native_change_detection_needs_feed():
    builder = FlowBuilder("f")
    with pytest.raises(InvalidOperationError):
        builder.add_source(SOURCE, "docs", change_detection="native")
    builder.add_source(OpSpec("source/in_memory_feed", {"dataset": "docs"}), "docs", change_detection="native")


def test_at_most_one_generated_uuid():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    index = builder.add_collector(name="idx")
    with docs.row() as doc:
        with pytest.raises(InvalidCollectorEntryError):
            builder.collect(index, a=GENERATED_UUID, b=GENERATED_UUID, text=doc["content"])
        with pytest.raises(InvalidCollectorEntryError):
            builder.collect(index)


def test_collector_entry_shape_is_fixed():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    index = builder.add_collector(name="idx")
    with docs.row() as doc:
        builder.collect(index, id=doc["id"], text=doc["content"])
        with pytest.raises(TypeMismatchError):
            builder.collect(index, id=doc["id"])


def test_collector_of_child_scope_not_reachable_from_sibling():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    notes = builder.add_source(OpSpec("source/in_memory", {"dataset": "notes"}), "notes")
    with docs.row():
        inner = builder.add_collector(name="inner")
    with notes.row() as note:
        with pytest.raises(ScopeViolationError):
            builder.collect(inner, id=note["id"])


def test_export_primary_key_validation():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    index = builder.add_collector(name="idx")
    with docs.row() as doc:
        builder.collect(index, id=doc["id"], text=doc["content"])

    with pytest.raises(InvalidIndexConfigError):
        builder.export("e", index, TARGET, [])
    with pytest.raises(InvalidIndexConfigError):
        builder.export("e", index, TARGET, ["missing"])
    builder.export("e", index, TARGET, ["id"])
    with pytest.raises(InvalidIndexConfigError):
        builder.export("e", index, TARGET, ["id"])


def test_vector_index_requires_vector_field():
    builder = FlowBuilder("f")
    docs = builder.add_source(SOURCE, "docs")
    index = builder.add_collector(name="idx")
    with docs.row() as doc:
        doc["embedding"] = doc["content"].transform(OpSpec("function/hash_embedding", {"dimension": 8}))
        builder.collect(index, id=doc["id"], text=doc["content"], embedding=doc["embedding"])

    with pytest.raises(InvalidIndexConfigError):
        builder.export("bad", index, TARGET, ["id"], [IndexSpec("text", SimilarityMetric.COSINE_SIMILARITY)])

    builder.export("good", index, TARGET, ["id"], [
        IndexSpec("embedding", SimilarityMetric.COSINE_SIMILARITY),
        IndexSpec("text"),
    ])
    flow = builder.build()
    schema = flow.target_schema("good")
    assert schema.key_names == ["id"]
    assert schema.value_names == ["text", "embedding"]
    assert isinstance(schema.value_fields[1].type, VectorType)


def test_target_schema_of_collector_without_entries_is_rejected():
    flow = build_upper_flow()
    flow.collectors["doc_index"].entry_type = None

    with pytest.raises(InvalidIndexConfigError, match="never receives entries"):
        flow.target_schema("doc_index")


def test_built_flow_is_closed():
    builder = FlowBuilder("f")
    builder.add_source(SOURCE, "docs")
    builder.build()
    with pytest.raises(DefinitionError):
        builder.add_source(SOURCE, "more")


def test_logic_fingerprint_tracks_row_logic_only():
    base = build_upper_flow("a")
    same = build_upper_flow("b")
    other = build_upper_flow("c", function_type="function/cached_upper")
    assert base.logic_fingerprint("docs") == same.logic_fingerprint("docs")
    assert base.logic_fingerprint("docs") != other.logic_fingerprint("docs")


def test_register_flow_and_describe():
    def build(builder, scope):
        docs = builder.add_source(SOURCE, "docs")
        index = scope.add_collector("idx")
        with docs.row() as doc:
            doc["shout"] = doc["content"].transform(UPPER)
            builder.collect(index, id=doc["id"], shout=doc["shout"])
        builder.export("idx", index, TARGET, ["id"])

    flow = register_flow("described", build)
    assert FlowRegistry.get_instance().get("described") is flow

    text = flow.describe()
    assert "for each row of root.docs:" in text
    assert "shout: Str" in text
    assert "idx: idx -> target/in_memory key=['id']" in text
    # Internal output fields stay hidden
    assert "  _upper_1: Str" not in text
