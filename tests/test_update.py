"""Incremental updates: what gets recomputed and what reaches storage."""

import uuid

import pytest

from incremental_flow_engine.components.targets.in_memory import InMemoryStore
from incremental_flow_engine.core import GENERATED_UUID, FlowBuilder, FlowEngine, OpSpec, StateStore

from tests.fixtures.components import FlakySource, FlakyTarget, UpperFunction
from tests.fixtures.flows import build_chunk_flow, build_upper_flow


async def setup_and_update(engine, flow):
    await engine.setup(flow)
    return await engine.update(flow)


@pytest.mark.anyio
async def test_changed_rows_only_reach_storage(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    flow = build_upper_flow()

    result = await setup_and_update(engine, flow)
    assert result.success
    assert out.rows == {"A": {"text": "FOO"}, "B": {"text": "BAR"}}

    out.clear_calls()
    UpperFunction.calls.clear()
    dataset.put("B", {"content": "baz"})
    dataset.put("C", {"content": "qux"})

    result = await engine.update(flow)
    assert result.success
    assert out.rows == {"A": {"text": "FOO"}, "B": {"text": "BAZ"}, "C": {"text": "QUX"}}
    assert out.calls_of("upsert") == ["B", "C"]
    assert out.calls_of("delete") == []
    assert sorted(UpperFunction.calls) == ["baz", "qux"]
    assert result.stats["rows_processed"] == 2
    assert result.stats["rows_unchanged"] == 1
    assert result.stats["exports"]["doc_index"] == {"upserts": 2, "deletes": 0}


@pytest.mark.anyio
async def test_removed_row_is_deleted_not_upserted(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    flow = build_upper_flow()
    await setup_and_update(engine, flow)

    out.clear_calls()
    dataset.delete("A")
    result = await engine.update(flow)

    assert result.stats["rows_removed"] == 1
    assert out.calls == [("delete", "A")]
    assert out.rows == {"B": {"text": "BAR"}}


@pytest.mark.anyio
async def test_update_without_changes_is_a_noop(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    flow = build_upper_flow()
    await setup_and_update(engine, flow)

    out.clear_calls()
    UpperFunction.calls.clear()
    result = await engine.update(flow)

    assert result.success
    assert out.calls == []
    assert UpperFunction.calls == []
    assert result.stats["rows_unchanged"] == 1


@pytest.mark.anyio
async def test_unchanged_version_token_skips_reevaluation(engine, dataset, out):
    dataset.put("A", {"content": "foo"}, version="v1")
    flow = build_upper_flow()
    await setup_and_update(engine, flow)

    UpperFunction.calls.clear()
    dataset.put("A", {"content": "edited"}, version="v1")
    result = await engine.update(flow)

    # The source vouches for the row through its version token
    assert UpperFunction.calls == []
    assert result.stats["rows_unchanged"] == 1
    assert out.rows == {"A": {"text": "FOO"}}

    dataset.put("A", {"content": "edited"}, version="v2")
    result = await engine.update(flow)
    assert UpperFunction.calls == ["edited"]
    assert out.rows == {"A": {"text": "EDITED"}}


@pytest.mark.anyio
async def test_failed_row_keeps_previous_entries(engine, dataset, out):
    dataset.put("A", {"content": "fine"})
    dataset.put("B", {"content": "ok"})
    flow = build_upper_flow(function_type="function/fail_on")
    await setup_and_update(engine, flow)
    assert out.rows == {"A": {"text": "fine"}, "B": {"text": "ok"}}

    dataset.put("B", {"content": "boom"})
    result = await engine.update(flow)

    assert not result.success
    [error] = result.errors
    assert error.error_type == "TransformError"
    assert error.import_name == "docs"
    assert error.key == "B"
    assert result.stats["rows_failed"] == 1
    assert out.rows["B"] == {"text": "ok"}

    dataset.put("B", {"content": "recovered"})
    result = await engine.update(flow)
    assert result.success
    assert out.rows["B"] == {"text": "recovered"}


@pytest.mark.anyio
async def test_logic_change_recomputes_every_row(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    await setup_and_update(engine, build_upper_flow())

    out.clear_calls()
    UpperFunction.calls.clear()
    changed = build_upper_flow(function_type="function/cached_upper")
    result = await engine.update(changed)

    assert result.success
    assert sorted(UpperFunction.calls) == ["bar", "foo"]
    # Same outputs, so storage is untouched
    assert out.calls == []


@pytest.mark.anyio
async def test_memoized_calls_survive_unrelated_changes(engine, dataset):
    builder = FlowBuilder("tagged")
    source = OpSpec("source/in_memory", {"dataset": "docs", "fields": {"content": "Str", "tag": "Str"}})
    docs = builder.add_source(source, "docs")
    index = builder.add_collector(name="idx")
    with docs.row() as doc:
        doc["text"] = doc["content"].transform(OpSpec("function/cached_upper"))
        builder.collect(index, id=doc["id"], text=doc["text"], tag=doc["tag"])
    builder.export("idx", index, OpSpec("target/in_memory", {"store": "tagged"}), ["id"])
    flow = builder.build()

    dataset.put("A", {"content": "foo", "tag": "x"})
    await setup_and_update(engine, flow)

    UpperFunction.calls.clear()
    dataset.put("A", {"content": "foo", "tag": "y"})
    result = await engine.update(flow)

    assert UpperFunction.calls == []
    assert result.stats["memo_hits"] == 1
    assert result.stats["function_calls"] == 0
    assert InMemoryStore.get("tagged").rows == {"A": {"text": "FOO", "tag": "y"}}


@pytest.mark.anyio
async def test_nested_rows_with_generated_ids(engine, dataset):
    dataset.put("doc1", {"content": "alpha beta gamma"})
    flow = build_chunk_flow()
    chunks = InMemoryStore.get("chunks")

    result = await setup_and_update(engine, flow)
    assert result.success
    assert sorted(row["text"] for row in chunks.rows.values()) == ["alpha", "beta", "gamma"]
    assert all(isinstance(key, uuid.UUID) for key in chunks.rows)
    first_ids = {row["text"]: key for key, row in chunks.rows.items()}

    chunks.clear_calls()
    dataset.put("doc1", {"content": "alpha beta delta"})
    result = await engine.update(flow)

    assert result.success
    assert result.stats["exports"]["chunk_index"] == {"upserts": 1, "deletes": 1}
    assert chunks.calls_of("delete") == [first_ids["gamma"]]
    ids = {row["text"]: key for key, row in chunks.rows.items()}
    assert ids["alpha"] == first_ids["alpha"]
    assert ids["beta"] == first_ids["beta"]


@pytest.mark.anyio
async def test_generated_ids_are_stable_across_fresh_state(dataset):
    dataset.put("doc1", {"content": "alpha beta gamma"})
    flow = build_chunk_flow()
    chunks = InMemoryStore.get("chunks")

    await setup_and_update(FlowEngine(StateStore(None)), flow)
    first = set(chunks.rows)
    chunks.rows.clear()

    await setup_and_update(FlowEngine(StateStore(None)), flow)
    assert set(chunks.rows) == first


@pytest.mark.anyio
async def test_duplicate_primary_key_fails_the_export(engine, dataset):
    builder = FlowBuilder("by_content")
    docs = builder.add_source(OpSpec("source/in_memory", {"dataset": "docs"}), "docs")
    index = builder.add_collector(name="idx")
    with docs.row() as doc:
        builder.collect(index, content=doc["content"], id=doc["id"])
    builder.export("idx", index, OpSpec("target/in_memory", {"store": "by_content"}), ["content"])
    flow = builder.build()

    dataset.put("A", {"content": "same"})
    dataset.put("B", {"content": "same"})
    result = await setup_and_update(engine, flow)

    assert not result.success
    [error] = result.errors
    assert error.error_type == "DuplicateKeyError"
    assert error.export_name == "idx"
    assert InMemoryStore.get("by_content").calls_of("upsert") == []


@pytest.mark.anyio
async def test_composite_primary_key(engine, dataset):
    builder = FlowBuilder("composite")
    docs = builder.add_source(OpSpec("source/in_memory", {"dataset": "docs"}), "docs")
    index = builder.add_collector(name="idx")
    with docs.row() as doc:
        doc["words"] = doc["content"].transform(OpSpec("function/words"))
        with doc["words"].row() as word:
            builder.collect(index, doc=doc["id"], word=word["word"])
    builder.export("idx", index, OpSpec("target/in_memory", {"store": "words"}), ["doc", "word"])
    flow = builder.build()

    dataset.put("A", {"content": "red fish"})
    result = await setup_and_update(engine, flow)

    assert result.success
    assert InMemoryStore.get("words").rows == {("A", "fish"): {}, ("A", "red"): {}}


@pytest.mark.anyio
async def test_storage_failure_is_retried_next_cycle(engine, dataset):
    dataset.put("A", {"content": "foo"})
    flow = build_upper_flow(target_type="target/flaky", store="flaky")
    await engine.setup(flow)

    FlakyTarget.failing = True
    result = await engine.update(flow)
    assert not result.success
    assert result.errors[0].error_type == "StorageError"
    assert result.errors[0].export_name == "doc_index"
    assert engine.store.load("docs").targets["doc_index"].keys == {}

    FlakyTarget.failing = False
    result = await engine.update(flow)
    assert result.success
    assert result.stats["rows_unchanged"] == 1
    assert InMemoryStore.get("flaky").rows == {"A": {"text": "FOO"}}


@pytest.mark.anyio
async def test_source_listing_failure_keeps_previous_entries(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    flow = build_upper_flow(source_type="source/flaky")
    await setup_and_update(engine, flow)

    out.clear_calls()
    FlakySource.fail_listing = True
    result = await engine.update(flow)

    assert not result.success
    assert result.errors[0].error_type == "SourceError"
    assert result.errors[0].key is None
    assert out.calls == []
    assert out.rows == {"A": {"text": "FOO"}}


@pytest.mark.anyio
async def test_unreadable_row_does_not_block_others(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    FlakySource.failing_keys = {"B"}
    flow = build_upper_flow(source_type="source/flaky")

    result = await setup_and_update(engine, flow)

    assert not result.success
    assert [e.key for e in result.errors] == ["B"]
    assert out.rows == {"A": {"text": "FOO"}}

    FlakySource.failing_keys = set()
    result = await engine.update(flow)
    assert result.success
    assert out.rows == {"A": {"text": "FOO"}, "B": {"text": "BAR"}}


@pytest.mark.anyio
async def test_update_of_unknown_import_is_rejected(engine):
    with pytest.raises(ValueError):
        await engine.update(build_upper_flow(), imports=["nope"])


@pytest.mark.anyio
async def test_row_missing_a_field_fails_alone(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"title": "no content"})

    result = await setup_and_update(engine, build_upper_flow())

    assert not result.success
    [error] = result.errors
    assert error.error_type == "TransformError"
    assert error.key == "B"
    assert result.stats["rows_failed"] == 1
    assert out.rows == {"A": {"text": "FOO"}}


@pytest.mark.anyio
async def test_unserializable_row_value_fails_alone(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": object()})
    flow = build_upper_flow()

    result = await setup_and_update(engine, flow)

    assert not result.success
    [error] = result.errors
    assert error.error_type == "SourceError"
    assert error.key == "B"
    assert result.stats["rows_failed"] == 1
    assert out.rows == {"A": {"text": "FOO"}}

    dataset.put("B", {"content": "bar"})
    result = await engine.update(flow)
    assert result.success
    assert out.rows == {"A": {"text": "FOO"}, "B": {"text": "BAR"}}


@pytest.mark.anyio
async def test_identical_chunks_of_different_documents_get_distinct_ids(engine, dataset):
    builder = FlowBuilder("texts")
    docs = builder.add_source(OpSpec("source/in_memory", {"dataset": "docs"}), "docs")
    index = builder.add_collector(name="text_index")
    with docs.row() as doc:
        doc["chunks"] = doc["content"].transform(OpSpec("function/split_text", {"chunk_size": 8}))
        with doc["chunks"].row() as chunk:
            builder.collect(index, id=GENERATED_UUID, text=chunk["text"])
    builder.export("text_index", index, OpSpec("target/in_memory", {"store": "texts"}), ["id"])
    flow = builder.build()

    dataset.put("A", {"content": "alpha beta"})
    dataset.put("B", {"content": "alpha beta"})
    result = await setup_and_update(engine, flow)

    assert result.success
    texts = InMemoryStore.get("texts")
    assert sorted(row["text"] for row in texts.rows.values()) == ["alpha", "alpha", "beta", "beta"]

    dataset.delete("A")
    result = await engine.update(flow)
    assert result.success
    assert sorted(row["text"] for row in texts.rows.values()) == ["alpha", "beta"]


@pytest.mark.anyio
async def test_failing_export_does_not_block_the_other(engine, dataset, out):
    builder = FlowBuilder("docs")
    docs = builder.add_source(OpSpec("source/in_memory", {"dataset": "docs"}), "docs")
    index = builder.add_collector(name="doc_index")
    with docs.row() as doc:
        doc["text"] = doc["content"].transform(OpSpec("function/upper"))
        builder.collect(index, id=doc["id"], text=doc["text"])
    builder.export("primary", index, OpSpec("target/in_memory", {"store": "out"}), ["id"])
    builder.export("mirror", index, OpSpec("target/flaky", {"store": "mirror"}), ["id"])
    flow = builder.build()
    dataset.put("A", {"content": "foo"})
    await engine.setup(flow)

    FlakyTarget.failing = True
    result = await engine.update(flow)

    assert not result.success
    [error] = result.errors
    assert error.error_type == "StorageError"
    assert error.export_name == "mirror"
    assert out.rows == {"A": {"text": "FOO"}}
    assert result.stats["exports"] == {"primary": {"upserts": 1, "deletes": 0}}
    targets = engine.store.load("docs").targets
    assert list(targets["primary"].keys.values()) == ["A"]
    assert targets["mirror"].keys == {}

    FlakyTarget.failing = False
    out.clear_calls()
    result = await engine.update(flow)

    assert result.success
    assert out.calls == []
    assert InMemoryStore.get("mirror").rows == {"A": {"text": "FOO"}}


@pytest.mark.anyio
async def test_repeated_cycles_converge_to_the_source(dataset, out, tmp_path):
    flow = build_upper_flow()
    await FlowEngine(StateStore(tmp_path)).setup(flow)
    cycles = [
        ({"A": "a1", "B": "b1", "C": "c1"}, []),
        ({"B": "b2"}, ["A"]),
        ({"A": "a2", "D": "d1"}, ["C"]),
        ({}, ["B", "D"]),
        ({"B": "b3", "C": "c2", "A": "a2"}, []),
        ({}, []),
    ]

    for puts, deletes in cycles:
        for key, content in puts.items():
            dataset.put(key, {"content": content})
        for key in deletes:
            dataset.delete(key)

        # A fresh engine each cycle replays the recorded state from disk
        engine = FlowEngine(StateStore(tmp_path))
        result = await engine.update(flow)

        assert result.success
        assert out.rows == {key: {"text": row["content"].upper()} for key, row in dataset.rows.items()}
        recorded = engine.store.load("docs").targets["doc_index"].keys
        assert set(recorded.values()) == set(dataset.rows)
