"""In-memory sources backed by named process-wide datasets."""

from __future__ import annotations

import threading
from typing import Any

from ...core.component import ComponentManifest, ConfigSpec, Source, SourceDiff, SourceRow
from ...core.registry import register_component
from ...core.types import TableType, ktable, parse_scalar


class InMemoryDataset:
    """
    A named, mutable keyed collection of rows.

    Every change is appended to a change log so the feed variant of the
    source can report what changed since a cursor.
    """

    _datasets: dict[str, "InMemoryDataset"] = {}
    _lock = threading.Lock()

    def __init__(self, name: str):
        self.name = name
        self.rows: dict[Any, dict[str, Any]] = {}
        self.versions: dict[Any, str] = {}
        self._log: list[tuple[Any, str]] = []

    @classmethod
    def get(cls, name: str) -> "InMemoryDataset":
        with cls._lock:
            if name not in cls._datasets:
                cls._datasets[name] = InMemoryDataset(name)
            return cls._datasets[name]

    @classmethod
    def reset_all(cls) -> None:
        with cls._lock:
            cls._datasets.clear()

    def put(self, key: Any, value: dict[str, Any], version: str | None = None) -> None:
        """Insert or replace a row."""
        self._log.append((key, "updated" if key in self.rows else "added"))
        self.rows[key] = dict(value)
        if version is not None:
            self.versions[key] = version
        else:
            self.versions.pop(key, None)

    def delete(self, key: Any) -> None:
        if key in self.rows:
            del self.rows[key]
            self.versions.pop(key, None)
            self._log.append((key, "removed"))

    def load(self, rows: dict[Any, dict[str, Any]]) -> None:
        """Replace the whole content: missing keys are deleted."""
        for key in list(self.rows):
            if key not in rows:
                self.delete(key)
        for key, value in rows.items():
            self.put(key, value)

    @property
    def cursor(self) -> str:
        return str(len(self._log))

    def changes_since(self, cursor: str | None) -> SourceDiff:
        if cursor is None:
            return SourceDiff(added=set(self.rows), cursor=self.cursor)

        first_op: dict[Any, str] = {}
        for key, op in self._log[int(cursor):]:
            first_op.setdefault(key, op)

        diff = SourceDiff(cursor=self.cursor)
        for key, op in first_op.items():
            if key not in self.rows:
                diff.removed.add(key)
            elif op == "added":
                diff.added.add(key)
            else:
                diff.updated.add(key)
        return diff


@register_component("source/in_memory")
class InMemorySource(Source):
    """
    Rows of a named InMemoryDataset.

    The row struct is the key field followed by the configured value fields.
    """

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="source/in_memory",
            description="Rows of a named in-memory dataset",
            category="source",
            config={
                "dataset": ConfigSpec(
                    type="string",
                    required=True,
                    description="Dataset name"
                ),
                "key_field": ConfigSpec(
                    type="string",
                    default="id",
                    description="Name of the key field"
                ),
                "key_type": ConfigSpec(
                    type="string",
                    default="Str",
                    description="Scalar type of the key"
                ),
                "fields": ConfigSpec(
                    type="dict",
                    default={"content": "Str"},
                    description="Value fields: name -> scalar type name"
                ),
            },
        )

    @property
    def dataset(self) -> InMemoryDataset:
        return InMemoryDataset.get(self.get_config("dataset"))

    def output_type(self) -> TableType:
        key_field = self.get_config("key_field")
        fields = [(key_field, parse_scalar(self.get_config("key_type")))]
        fields.extend(
            (name, parse_scalar(type_name))
            for name, type_name in self.get_config("fields").items()
        )
        return ktable(fields)

    async def list_keys(self) -> list[Any]:
        return list(self.dataset.rows)

    async def read(self, key: Any) -> SourceRow | None:
        dataset = self.dataset
        if key not in dataset.rows:
            return None
        return SourceRow(dict(dataset.rows[key]), dataset.versions.get(key))


@register_component("source/in_memory_feed")
class InMemoryFeedSource(InMemorySource):
    """In-memory dataset that also reports changes natively."""

    @classmethod
    def describe(cls) -> ComponentManifest:
        manifest = super().describe()
        manifest.type = "source/in_memory_feed"
        manifest.description = "Rows of a named in-memory dataset, with a change feed"
        return manifest

    async def diff(self, since: str | None) -> SourceDiff:
        return self.dataset.changes_since(since)
