"""Imports backed by a native change feed."""

import pytest

from tests.fixtures.components import CountingFeedSource
from tests.fixtures.flows import build_upper_flow


def feed_flow(**kwargs):
    return build_upper_flow(source_type="source/counting_feed", **kwargs)


@pytest.mark.anyio
async def test_only_changed_keys_are_read(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    flow = feed_flow()
    await engine.setup(flow)
    await engine.update(flow)
    assert sorted(CountingFeedSource.reads) == ["A", "B"]

    CountingFeedSource.reads.clear()
    dataset.put("B", {"content": "baz"})
    result = await engine.update(flow)

    assert CountingFeedSource.reads == ["B"]
    assert out.rows == {"A": {"text": "FOO"}, "B": {"text": "BAZ"}}
    assert result.stats["rows_processed"] == 1


@pytest.mark.anyio
async def test_removed_keys_come_from_the_feed(engine, dataset, out):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    flow = feed_flow()
    await engine.setup(flow)
    await engine.update(flow)

    CountingFeedSource.reads.clear()
    out.clear_calls()
    dataset.delete("A")
    result = await engine.update(flow)

    assert CountingFeedSource.reads == []
    assert result.stats["rows_removed"] == 1
    assert out.calls == [("delete", "A")]


@pytest.mark.anyio
async def test_failed_keys_are_retried(engine, dataset, out):
    dataset.put("A", {"content": "fine"})
    dataset.put("B", {"content": "boom"})
    flow = feed_flow(function_type="function/fail_on")
    await engine.setup(flow)

    result = await engine.update(flow)
    assert not result.success
    assert engine.store.load("docs").summary()["imports"]["docs"]["pending_retry"] == 1

    # Nothing new in the feed, the failed key is read again
    CountingFeedSource.reads.clear()
    result = await engine.update(flow)
    assert CountingFeedSource.reads == ["B"]
    assert not result.success

    dataset.put("B", {"content": "fixed"})
    CountingFeedSource.reads.clear()
    result = await engine.update(flow)

    assert result.success
    assert CountingFeedSource.reads == ["B"]
    assert out.rows == {"A": {"text": "fine"}, "B": {"text": "fixed"}}
    assert engine.store.load("docs").summary()["imports"]["docs"]["pending_retry"] == 0


@pytest.mark.anyio
async def test_full_scan_mode_ignores_the_feed(engine, dataset):
    dataset.put("A", {"content": "foo"})
    flow = feed_flow(change_detection="full_scan")
    await engine.setup(flow)
    await engine.update(flow)

    CountingFeedSource.reads.clear()
    await engine.update(flow)

    # Every key is read again; the content fingerprint stops re-evaluation
    assert CountingFeedSource.reads == ["A"]
    assert engine.store.load("docs").source("docs").cursor is None


@pytest.mark.anyio
async def test_logic_change_rereads_everything(engine, dataset):
    dataset.put("A", {"content": "foo"})
    dataset.put("B", {"content": "bar"})
    await engine.setup(feed_flow())
    await engine.update(feed_flow())

    CountingFeedSource.reads.clear()
    result = await engine.update(feed_flow(function_type="function/cached_upper"))

    assert sorted(CountingFeedSource.reads) == ["A", "B"]
    assert result.stats["rows_processed"] == 2
