"""Split text into chunks, one row per chunk."""

from __future__ import annotations

from typing import Any

from ...core.component import ComponentManifest, ConfigSpec, Function, InputSpec
from ...core.context import RowContext
from ...core.registry import register_component
from ...core.types import RANGE, STR, DataType, ScalarKind, ScalarType, ktable


def split_text(text: str, chunk_size: int, chunk_overlap: int = 0) -> list[tuple[int, int]]:
    """
    Chunk boundaries of at most chunk_size characters.

    Chunks end at the last whitespace inside the window when there is one.
    Leading whitespace is skipped, so no chunk starts with a blank.
    """
    spans = []
    length = len(text)
    pos = 0
    while pos < length:
        while pos < length and text[pos].isspace():
            pos += 1
        if pos >= length:
            break
        end = min(pos + chunk_size, length)
        if end < length:
            cut = max(text.rfind(" ", pos, end), text.rfind("\n", pos, end))
            if cut > pos:
                end = cut
        spans.append((pos, end))
        if end >= length:
            break
        next_pos = end - chunk_overlap
        pos = next_pos if next_pos > pos else end
    return spans


@register_component("function/split_text")
class SplitTextFunction(Function):
    """
    Split a string into a KTable of chunks keyed by their (start, end) range.
    """

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="function/split_text",
            description="Split text into chunks",
            category="function",
            config={
                "chunk_size": ConfigSpec(
                    type="integer",
                    default=1000,
                    description="Maximum chunk length in characters"
                ),
                "chunk_overlap": ConfigSpec(
                    type="integer",
                    default=0,
                    description="Characters repeated between consecutive chunks"
                ),
            },
            inputs=[InputSpec(name="text", type="Str", description="Text to split")],
        )

    def _validate_config(self) -> None:
        super()._validate_config()
        chunk_size = self.get_config("chunk_size")
        chunk_overlap = self.get_config("chunk_overlap")
        if chunk_size < 1:
            raise ValueError(f"Component {self.instance_id}: chunk_size must be positive")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError(f"Component {self.instance_id}: chunk_overlap must be in [0, chunk_size)")

    def analyze(self, *input_types: DataType) -> DataType:
        if len(input_types) != 1:
            raise TypeError(f"split_text takes 1 input, got {len(input_types)}")
        t = input_types[0]
        if not isinstance(t, ScalarType) or t.kind != ScalarKind.STR:
            raise TypeError(f"split_text input must be Str, got {t}")
        return ktable([("location", RANGE), ("text", STR)])

    async def execute(self, inputs: list[Any], context: RowContext) -> list[dict[str, Any]]:
        text = inputs[0] or ""
        spans = split_text(text, self.get_config("chunk_size"), self.get_config("chunk_overlap"))
        return [{"location": (start, end), "text": text[start:end]} for start, end in spans]
