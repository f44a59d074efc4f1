"""Shared fixtures: every test starts from empty registries and datasets."""

import pytest

import incremental_flow_engine  # noqa: F401  (registers built-in components)
from incremental_flow_engine.components.sources.in_memory import InMemoryDataset
from incremental_flow_engine.components.targets.in_memory import InMemoryStore
from incremental_flow_engine.core import AuthRegistry, FlowEngine, FlowRegistry, StateStore

from tests.fixtures import components as test_components


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def clean_registries():
    FlowRegistry.get_instance().clear()
    AuthRegistry.get_instance().clear()
    InMemoryDataset.reset_all()
    InMemoryStore.reset_all()
    test_components.reset()
    yield


@pytest.fixture
def engine() -> FlowEngine:
    """Engine with in-memory state."""
    return FlowEngine(StateStore(None), max_concurrent=4)


@pytest.fixture
def dataset() -> InMemoryDataset:
    return InMemoryDataset.get("docs")


@pytest.fixture
def out() -> InMemoryStore:
    return InMemoryStore.get("out")
