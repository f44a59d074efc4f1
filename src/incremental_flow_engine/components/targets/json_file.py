"""JSON file target - keeps exported rows in one JSON document."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from ...core.codec import key_str, to_jsonable
from ...core.component import ComponentManifest, ConfigSpec, Target, TargetSchema
from ...core.registry import register_component


@register_component("target/json_file")
class JsonFileTarget(Target):
    """
    Write exported rows to a JSON file.

    Layout:
        {
          "schema": {...},
          "updated_at": "...",
          "rows": {"<canonical key>": {"key": ..., "fields": {...}}}
        }

    Each batch is read, modified and written back atomically.
    """

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="target/json_file",
            description="Rows kept in a JSON file",
            category="target",
            config={
                "path": ConfigSpec(
                    type="string",
                    required=True,
                    description="Output file path"
                ),
                "pretty": ConfigSpec(
                    type="boolean",
                    default=True,
                    description="Pretty-print JSON"
                ),
            },
        )

    @property
    def path(self) -> Path:
        return Path(self.get_config("path")).expanduser()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            raise FileNotFoundError(f"Target file not set up: {self.path}")
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, document: dict[str, Any]) -> None:
        document["updated_at"] = datetime.now().isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2 if self.get_config("pretty") else None, ensure_ascii=False)
        tmp_path.replace(self.path)

    async def setup(self, schema: TargetSchema) -> None:
        self._save({"schema": schema.to_dict(), "rows": {}})

    async def upsert(self, key: Any, fields: dict[str, Any]) -> None:
        await self.apply([], [(key, fields)])

    async def delete(self, key: Any) -> None:
        await self.apply([key], [])

    async def apply(
        self,
        deletes: list[Any],
        upserts: list[tuple[Any, dict[str, Any]]],
    ) -> None:
        document = self._load()
        rows = document.setdefault("rows", {})
        for key in deletes:
            rows.pop(key_str(key), None)
        for key, fields in upserts:
            rows[key_str(key)] = {"key": to_jsonable(key), "fields": to_jsonable(fields)}
        self._save(document)

    async def drop(self) -> None:
        if self.path.exists():
            self.path.unlink()
