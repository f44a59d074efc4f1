"""Parse JSON out of text."""

from __future__ import annotations

import json
import re
from typing import Any

from ...core.component import ComponentManifest, ConfigSpec, Function, InputSpec
from ...core.context import RowContext
from ...core.registry import register_component
from ...core.types import JSON, DataType, ScalarKind, ScalarType


def extract_json(text: str) -> str | None:
    """Find the JSON document in text: a fenced code block, or the first balanced object/array."""
    text = text.strip()

    code_block = re.search(r"```(?:json)?\s*\n?(.*?)```", text, re.DOTALL)
    if code_block:
        return code_block.group(1).strip()

    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    open_char = text[start]
    close_char = "}" if open_char == "{" else "]"

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return text[start:]


@register_component("function/parse_json")
class ParseJsonFunction(Function):
    """
    Parse a JSON document embedded in a string.

    Handles plain JSON, fenced ```json blocks and JSON surrounded by
    other text. Fails the row on invalid JSON unless `default` is set.
    """

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="function/parse_json",
            description="Extract and parse JSON from text",
            category="function",
            config={
                "default": ConfigSpec(
                    type="any",
                    required=False,
                    description="Value used when no valid JSON is found (unset = fail the row)"
                ),
            },
            inputs=[InputSpec(name="text", type="Str", description="Text containing JSON")],
        )

    def analyze(self, *input_types: DataType) -> DataType:
        if len(input_types) != 1:
            raise TypeError(f"parse_json takes 1 input, got {len(input_types)}")
        t = input_types[0]
        if not isinstance(t, ScalarType) or t.kind not in (ScalarKind.STR, ScalarKind.JSON):
            raise TypeError(f"parse_json input must be Str, got {t}")
        return JSON

    async def execute(self, inputs: list[Any], context: RowContext) -> Any:
        text = inputs[0]
        if not isinstance(text, str):
            # Already parsed (Json input)
            return text

        raw = extract_json(text)
        if raw is not None:
            try:
                return json.loads(raw)
            except json.JSONDecodeError as e:
                if "default" not in self.config:
                    raise ValueError(f"Invalid JSON: {e}") from e
        elif "default" not in self.config:
            raise ValueError("No JSON found in text")
        return self.config["default"]
