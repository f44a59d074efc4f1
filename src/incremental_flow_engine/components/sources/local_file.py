"""Local file source - files under a directory, keyed by relative path."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from ...core.component import ComponentManifest, ConfigSpec, Source, SourceRow
from ...core.registry import register_component
from ...core.types import BYTES, STR, TableType, ktable


@register_component("source/local_file")
class LocalFileSource(Source):
    """
    Read files under a directory.

    Rows are (filename, content). The version token is the file's
    modification time and size, so unchanged files are not re-read
    into the flow.
    """

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="source/local_file",
            description="Files under a local directory",
            category="source",
            config={
                "path": ConfigSpec(
                    type="string",
                    required=True,
                    description="Root directory"
                ),
                "pattern": ConfigSpec(
                    type="string",
                    default="**/*",
                    description="Glob pattern relative to the root"
                ),
                "binary": ConfigSpec(
                    type="boolean",
                    default=False,
                    description="Read content as bytes instead of text"
                ),
                "encoding": ConfigSpec(
                    type="string",
                    default="utf-8",
                    description="Text encoding (ignored when binary)"
                ),
                "exclude_hidden": ConfigSpec(
                    type="boolean",
                    default=True,
                    description="Skip files and directories starting with '.'"
                ),
            },
        )

    @property
    def root(self) -> Path:
        return Path(self.get_config("path")).expanduser()

    def output_type(self) -> TableType:
        content_type = BYTES if self.get_config("binary") else STR
        return ktable([("filename", STR), ("content", content_type)])

    async def list_keys(self) -> list[str]:
        root = self.root
        if not root.is_dir():
            raise FileNotFoundError(f"Directory not found: {root}")
        exclude_hidden = self.get_config("exclude_hidden")
        keys = []
        for path in sorted(root.glob(self.get_config("pattern"))):
            if not path.is_file():
                continue
            relative = path.relative_to(root)
            if exclude_hidden and any(part.startswith(".") for part in relative.parts):
                continue
            keys.append(relative.as_posix())
        return keys

    async def read(self, key: Any) -> SourceRow | None:
        path = self.root / key
        if not path.is_file():
            return None
        stat = path.stat()
        if self.get_config("binary"):
            content: Any = path.read_bytes()
        else:
            content = path.read_text(encoding=self.get_config("encoding"))
        return SourceRow({"content": content}, version=f"{stat.st_mtime_ns}:{stat.st_size}")
