"""Flow definitions shared by tests."""

from __future__ import annotations

from incremental_flow_engine.core import GENERATED_UUID, Flow, FlowBuilder, OpSpec


def build_upper_flow(
    name: str = "docs",
    dataset: str = "docs",
    store: str = "out",
    source_type: str = "source/in_memory",
    function_type: str = "function/upper",
    target_type: str = "target/in_memory",
    change_detection: str = "auto",
) -> Flow:
    """One import, text = function(content), exported by row key."""
    builder = FlowBuilder(name)
    docs = builder.add_source(OpSpec(source_type, {"dataset": dataset}), "docs", change_detection=change_detection)
    index = builder.add_collector(name="doc_index")
    with docs.row() as doc:
        doc["text"] = doc["content"].transform(OpSpec(function_type))
        builder.collect(index, id=doc["id"], text=doc["text"])
    builder.export("doc_index", index, OpSpec(target_type, {"store": store}), ["id"])
    return builder.build()


def build_chunk_flow(name: str = "chunks", dataset: str = "docs", store: str = "chunks", chunk_size: int = 8) -> Flow:
    """Nested rows: every chunk of every document, keyed by a generated UUID."""
    builder = FlowBuilder(name)
    docs = builder.add_source(OpSpec("source/in_memory", {"dataset": dataset}), "docs")
    index = builder.add_collector(name="chunk_index")
    with docs.row() as doc:
        doc["chunks"] = doc["content"].transform(
            OpSpec("function/split_text", {"chunk_size": chunk_size})
        )
        with doc["chunks"].row() as chunk:
            builder.collect(
                index,
                id=GENERATED_UUID,
                doc=doc["id"],
                location=chunk["location"],
                text=chunk["text"],
            )
    builder.export("chunk_index", index, OpSpec("target/in_memory", {"store": store}), ["id"])
    return builder.build()
