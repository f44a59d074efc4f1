"""Step traces recorded during an update cycle.

The tracer level decides what is kept:

    NONE      nothing
    ERRORS    failed steps only (default)
    STEPS     every step, without payloads
    DETAILED  every step with its inputs and outputs (runner --trace)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

PREVIEW_WIDTH = 80


class TraceLevel(Enum):
    NONE = 0
    ERRORS = 1
    STEPS = 2
    DETAILED = 3


def _preview(value: Any) -> str:
    text = str(value)
    if len(text) <= PREVIEW_WIDTH:
        return text
    return text[:PREVIEW_WIDTH] + "..."


@dataclass
class ExecutionTrace:
    """One read, call, apply, setup or drop step."""
    step_index: int
    step_type: str
    component_id: str | None
    started: float
    key_path: tuple[Any, ...] = ()
    duration_ms: float = 0.0
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None

    @property
    def success(self) -> bool:
        return self.error_type is None

    @property
    def where(self) -> str:
        return "/".join(str(k) for k in self.key_path)

    def __str__(self) -> str:
        parts = [f"#{self.step_index}", self.step_type]
        if self.component_id:
            parts.append(f"[{self.component_id}]")
        if self.key_path:
            parts.append(f"@ {self.where}")
        if self.duration_ms > 0:
            parts.append(f"{self.duration_ms:.1f}ms")
        parts.append("ok" if self.success else "FAILED")
        return " ".join(parts)

    def format_detailed(self) -> str:
        """Header line followed by input/output payloads and the error."""
        lines = [str(self)]
        for label, payload in (("in", self.inputs), ("out", self.outputs)):
            lines.extend(f"  {label} {name} = {_preview(v)}" for name, v in payload.items())
        if not self.success:
            lines.append(f"  {self.error_type}: {self.error}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "step": self.step_index,
            "type": self.step_type,
            "component": self.component_id,
            "key_path": [str(k) for k in self.key_path],
            "duration_ms": round(self.duration_ms, 3),
            "success": self.success,
        }
        if not self.success:
            data["error"] = {"type": self.error_type, "message": self.error}
        if self.inputs or self.outputs:
            data["inputs"] = {k: _preview(v) for k, v in self.inputs.items()}
            data["outputs"] = {k: _preview(v) for k, v in self.outputs.items()}
        return data


@dataclass
class ExecutionTracer:
    """Collects the traces of one update cycle."""
    level: TraceLevel = TraceLevel.ERRORS
    traces: list[ExecutionTrace] = field(default_factory=list)
    _next_index: int = 0

    @property
    def detailed(self) -> bool:
        return self.level is TraceLevel.DETAILED

    def start_step(
        self,
        step_type: str,
        component_id: str | None = None,
        inputs: dict[str, Any] | None = None,
        key_path: tuple[Any, ...] = (),
    ) -> ExecutionTrace:
        trace = ExecutionTrace(
            step_index=self._next_index,
            step_type=step_type,
            component_id=component_id,
            started=time.perf_counter(),
            key_path=key_path,
        )
        if self.detailed and inputs:
            trace.inputs = dict(inputs)
        self._next_index += 1
        return trace

    def end_step(
        self,
        trace: ExecutionTrace,
        outputs: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        """Finish a step and keep it if the level asks for it."""
        trace.duration_ms = (time.perf_counter() - trace.started) * 1000
        if self.detailed and outputs:
            trace.outputs = dict(outputs)
        if error is not None:
            trace.error = str(error)
            trace.error_type = type(error).__name__

        keep = {
            TraceLevel.NONE: False,
            TraceLevel.ERRORS: not trace.success,
        }.get(self.level, True)
        if keep:
            self.traces.append(trace)
