"""Template function - string interpolation of positional inputs."""

from __future__ import annotations

import re
from typing import Any

from ...core.component import ComponentManifest, ConfigSpec, Function, InputSpec
from ...core.context import RowContext
from ...core.registry import register_component
from ...core.types import STR, DataType, ScalarType, VectorType

_PLACEHOLDER = re.compile(r"\{(\d+)\}")


@register_component("function/template")
class TemplateFunction(Function):
    """
    Substitute {0}, {1}, ... with the function's inputs.

    Useful for building prompts, titles, or combined text fields.
    """

    @classmethod
    def describe(cls) -> ComponentManifest:
        return ComponentManifest(
            type="function/template",
            description="String template interpolation of positional inputs",
            category="function",
            config={
                "template": ConfigSpec(
                    type="string",
                    required=True,
                    description="Template with {0}, {1}, ... placeholders"
                ),
                "upper": ConfigSpec(
                    type="boolean",
                    default=False,
                    description="Upper-case the result"
                ),
            },
            inputs=[
                InputSpec(name="*values", type="scalar", description="Values to substitute"),
            ],
        )

    def analyze(self, *input_types: DataType) -> DataType:
        template = self.get_config("template")
        for index in (int(m.group(1)) for m in _PLACEHOLDER.finditer(template)):
            if index >= len(input_types):
                raise TypeError(f"template uses {{{index}}} but only {len(input_types)} input(s) given")
        for t in input_types:
            if not isinstance(t, (ScalarType, VectorType)):
                raise TypeError(f"template inputs must be scalars, got {t}")
        return STR

    async def execute(self, inputs: list[Any], context: RowContext) -> str:
        def replace(m: re.Match) -> str:
            value = inputs[int(m.group(1))]
            return "" if value is None else str(value)

        result = _PLACEHOLDER.sub(replace, self.get_config("template"))
        if self.get_config("upper"):
            result = result.upper()
        return result
