"""In-memory target backed by named process-wide stores."""

from __future__ import annotations

import threading
from typing import Any

from ...core.component import ComponentManifest, ConfigSpec, Target, TargetSchema
from ...core.registry import register_component


class InMemoryStore:
    """
    A named table of rows keyed by primary key.

    Every call is appended to `calls` as (operation, key), so callers can
    check exactly what a target was sent.
    """

    _stores: dict[str, "InMemoryStore"] = {}
    _lock = threading.Lock()

    def __init__(self, name: str):
        self.name = name
        self.rows: dict[Any, dict[str, Any]] = {}
        self.schema: TargetSchema | None = None
        self.exists = False
        self.calls: list[tuple[str, Any]] = []

    @classmethod
    def get(cls, name: str) -> "InMemoryStore":
        with cls._lock:
            if name not in cls._stores:
                cls._stores[name] = InMemoryStore(name)
            return cls._stores[name]

    @classmethod
    def reset_all(cls) -> None:
        with cls._lock:
            cls._stores.clear()

    def calls_of(self, operation: str) -> list[Any]:
        return [key for op, key in self.calls if op == operation]

    def clear_calls(self) -> None:
        self.calls.clear()


@register_component("target/in_memory")
class InMemoryTarget(Target):
    """Keep exported rows in a named InMemoryStore."""

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="target/in_memory",
            description="Rows kept in a named in-memory store",
            category="target",
            config={
                "store": ConfigSpec(
                    type="string",
                    required=True,
                    description="Store name"
                ),
            },
        )

    @property
    def store(self) -> InMemoryStore:
        return InMemoryStore.get(self.get_config("store"))

    async def setup(self, schema: TargetSchema) -> None:
        store = self.store
        store.calls.append(("setup", None))
        store.schema = schema
        store.exists = True

    async def upsert(self, key: Any, fields: dict[str, Any]) -> None:
        store = self.store
        store.calls.append(("upsert", key))
        store.rows[key] = dict(fields)

    async def delete(self, key: Any) -> None:
        store = self.store
        store.calls.append(("delete", key))
        store.rows.pop(key, None)

    async def drop(self) -> None:
        store = self.store
        store.calls.append(("drop", None))
        store.rows.clear()
        store.schema = None
        store.exists = False
