"""State log replay, compaction and restart behavior."""

import json

import pytest

from incremental_flow_engine.core import FlowEngine, StateStore
from incremental_flow_engine.core.persistence import RowState

from tests.fixtures.components import UpperFunction
from tests.fixtures.flows import build_upper_flow


def row(key, text):
    return RowState(key=key, version=None, fingerprint="fp-" + key, logic="l1", entries={"idx": [{"id": key, "text": text}]})


def test_state_is_rebuilt_by_replay(tmp_path):
    store = StateStore(tmp_path)
    store.commit_row("f", "docs", row("A", "a"))
    store.commit_row("f", "docs", row("B", "b"))
    store.remove_row("f", "docs", "A")
    store.set_cursor("f", "docs", "7")
    store.record_setup("f", "idx", {"target": {"type": "target/in_memory", "config": {}}})
    store.record_applied("f", "idx", deletes=[], upserts=[("B", "h1")])

    state = StateStore(tmp_path).load("f")

    source = state.sources["docs"]
    assert list(source.rows) == ['"B"']
    assert source.rows['"B"'].entries == {"idx": [{"id": "B", "text": "b"}]}
    assert source.cursor == "7"
    assert state.targets["idx"].hashes == {'"B"': "h1"}
    assert state.total_events == 6
    assert state.entries("idx") == [{"id": "B", "text": "b"}]


def test_malformed_trailing_line_is_skipped(tmp_path, caplog):
    store = StateStore(tmp_path)
    store.commit_row("f", "docs", row("A", "a"))
    state_file = tmp_path / "f" / "state.jsonl"
    with open(state_file, "a", encoding="utf-8") as f:
        f.write('{"type": "row_committed", "import": "do')

    state = StateStore(tmp_path).load("f")

    assert list(state.sources["docs"].rows) == ['"A"']
    assert "malformed" in caplog.text


def test_compact_rewrites_log_as_single_snapshot(tmp_path):
    store = StateStore(tmp_path)
    for i in range(5):
        store.commit_row("f", "docs", row(f"K{i}", str(i)))
    store.set_retry("f", "docs", [("K", 1)])
    store.record_setup("f", "idx", {"target": {"type": "target/in_memory"}})
    store.record_applied("f", "idx", deletes=[], upserts=[(("K", 1), "h")])

    store.compact("f")

    lines = (tmp_path / "f" / "state.jsonl").read_text().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["type"] == "snapshot"

    state = StateStore(tmp_path).load("f")
    assert len(state.sources["docs"].rows) == 5
    assert list(state.sources["docs"].retry.values()) == [("K", 1)]
    assert list(state.targets["idx"].keys.values()) == [("K", 1)]


def test_memory_only_store_writes_nothing(tmp_path):
    store = StateStore(None)
    store.commit_row("f", "docs", row("A", "a"))
    assert store.flow_names() == ["f"]
    assert list(tmp_path.iterdir()) == []


def test_unserializable_event_leaves_state_untouched(tmp_path):
    store = StateStore(tmp_path)
    store.record_setup("f", "idx", {"target": {"type": "target/in_memory", "config": {}}})

    with pytest.raises(TypeError):
        store.record_setup("f", "idx", {"target": {"type": "target/in_memory", "config": {"conn": object()}}})

    state = store.load("f")
    assert state.targets["idx"].snapshot == {"target": {"type": "target/in_memory", "config": {}}}
    assert state.total_events == 1
    assert StateStore(tmp_path).load("f").total_events == 1


def test_flow_names_lists_flows_on_disk(tmp_path):
    StateStore(tmp_path).commit_row("one", "docs", row("A", "a"))
    StateStore(tmp_path).commit_row("two", "docs", row("A", "a"))
    assert StateStore(tmp_path).flow_names() == ["one", "two"]


@pytest.mark.anyio
async def test_restart_resumes_without_recomputing(tmp_path, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    flow = build_upper_flow()

    first = FlowEngine(StateStore(tmp_path))
    await first.setup(flow)
    await first.update(flow)

    out.clear_calls()
    UpperFunction.calls.clear()
    dataset.put("B", {"content": "baz"})

    restarted = FlowEngine(StateStore(tmp_path))
    result = await restarted.update(flow)

    assert result.success
    assert UpperFunction.calls == ["baz"]
    assert out.calls == [("upsert", "B")]


@pytest.mark.anyio
async def test_compacted_state_keeps_working(tmp_path, dataset, out):
    dataset.put("A", {"content": "foo"})
    flow = build_upper_flow()
    engine = FlowEngine(StateStore(tmp_path))
    await engine.setup(flow)
    await engine.update(flow)
    engine.compact(flow)

    out.clear_calls()
    dataset.delete("A")
    result = await FlowEngine(StateStore(tmp_path)).update(flow)

    assert result.success
    assert out.calls == [("delete", "A")]
