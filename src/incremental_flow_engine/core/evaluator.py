"""Per-row evaluation of a flow's row blocks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from .auth import AuthRegistry, resolve_auth_refs
from .codec import fingerprint, generate_entry_uuid
from .context import RowContext
from .errors import TransformError
from .operations import CollectOp, ForEachRowOp, TransformOp, walk_operations
from .registry import ComponentRegistry
from .scope import GENERATED_UUID
from .tracing import ExecutionTracer
from .types import TableKind, TableType

if TYPE_CHECKING:
    from .builder import Flow
    from .component import Function
    from .scope import DataSlice

logger = logging.getLogger(__name__)


@dataclass
class RowEvaluation:
    """Outcome of evaluating one import row."""
    entries: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    memos: dict[str, Any] = field(default_factory=dict)
    calls: int = 0
    memo_hits: int = 0


def compute_call_hash(op: TransformOp, inputs: list[Any]) -> str:
    """Stable hash for a function call: its spec, version and inputs."""
    return fingerprint([op.spec.fingerprint(), op.behavior_version, inputs])


class RowEvaluator:
    """
    Evaluates the row blocks of one import, one source row at a time.

    Function components are created once per evaluator and shared by all
    rows. Sibling rows of nested tables are evaluated concurrently; within
    one row, operations run in declaration order.
    """

    def __init__(
        self,
        flow: "Flow",
        import_name: str,
        registry: ComponentRegistry | None = None,
        tracer: ExecutionTracer | None = None,
        auth_registry: AuthRegistry | None = None,
    ):
        self.flow = flow
        self.import_name = import_name
        self.blocks = flow.row_operations(import_name)
        self.key_field = flow.imports[import_name].output_type.key_field
        self.tracer = tracer or ExecutionTracer()
        registry = registry or ComponentRegistry.get_instance()

        # Resolving auth here makes a missing entry fail the import up front
        self._functions: dict[int, "Function"] = {}
        for op in walk_operations(self.blocks):
            if isinstance(op, TransformOp):
                config = resolve_auth_refs(op.spec.encoded_config(), auth_registry)
                self._functions[id(op)] = registry.create(op.spec.type, op.output_field, config)

    async def evaluate(
        self,
        key: Any,
        value: dict[str, Any],
        previous_memos: dict[str, Any] | None = None,
    ) -> RowEvaluation:
        """
        Evaluate every row block for one source row.

        Raises TransformError if any function call fails; the row then
        produces nothing.
        """
        evaluation = RowEvaluation()
        previous_memos = previous_memos or {}
        row_values = {self.key_field: key, **value}
        for block in self.blocks:
            ctx = RowContext(
                block.scope,
                dict(row_values),
                key=key,
                flow_name=self.flow.name,
                import_name=self.import_name,
            )
            await self._run(block.operations, ctx, evaluation, previous_memos, evaluation.entries)
        return evaluation

    async def _run(
        self,
        operations,
        ctx: RowContext,
        evaluation: RowEvaluation,
        previous_memos: dict[str, Any],
        collected: dict[str, list[dict[str, Any]]],
    ) -> None:
        for op in operations:
            if isinstance(op, TransformOp):
                inputs = [self._resolve(ctx, s) for s in op.inputs]
                output = await self._call(op, inputs, ctx, evaluation, previous_memos)
                ctx.set(op.output_field, output)

            elif isinstance(op, ForEachRowOp):
                children = self._child_contexts(op, ctx)
                results: list[dict[str, list[dict[str, Any]]]] = [{} for _ in children]
                await asyncio.gather(*(
                    self._run(op.operations, child, evaluation, previous_memos, results[i])
                    for i, child in enumerate(children)
                ))
                # Merge in row order so stored entries are deterministic
                for child_entries in results:
                    for collector_id, entries in child_entries.items():
                        collected.setdefault(collector_id, []).extend(entries)

            elif isinstance(op, CollectOp):
                collected.setdefault(op.collector_id, []).append(self._entry(op, ctx))

    def _resolve(self, ctx: RowContext, value: "DataSlice") -> Any:
        """Resolve a slice, failing the row when the data lacks it."""
        try:
            return ctx.resolve(value)
        except (LookupError, AttributeError) as e:
            raise TransformError(
                f"Row {'/'.join(str(k) for k in ctx.key_path)}: cannot resolve {value.describe()}: {e}",
                function_type="resolve",
                key_path=ctx.key_path,
                cause=e,
            ) from e

    def _child_contexts(self, op: ForEachRowOp, ctx: RowContext) -> list[RowContext]:
        rows = self._resolve(ctx, op.table)
        if rows is None:
            return []
        if not isinstance(rows, (list, tuple)):
            raise TransformError(
                f"{op.table.describe()} must evaluate to a list of rows, got {type(rows).__name__}",
                function_type="for_each_row",
                key_path=ctx.key_path,
            )
        table_type = op.table.type
        assert isinstance(table_type, TableType)
        children = []
        for index, row in enumerate(rows):
            if not isinstance(row, dict):
                raise TransformError(
                    f"Row {index} of {op.table.describe()} is {type(row).__name__}, not a struct",
                    function_type="for_each_row",
                    key_path=ctx.key_path,
                )
            if table_type.kind == TableKind.KTABLE:
                row_key = row.get(table_type.key_field)
            else:
                row_key = index
            children.append(ctx.child(op.scope, dict(row), row_key))
        return children

    def _entry(self, op: CollectOp, ctx: RowContext) -> dict[str, Any]:
        entry: dict[str, Any] = {}
        for name, value in op.fields:
            if value is not GENERATED_UUID:
                entry[name] = self._resolve(ctx, value)
        uuid_field = op.uuid_field
        if uuid_field is None:
            return entry
        generated = generate_entry_uuid(entry.values(), ctx.key_path)
        # Keep declared field order
        return {
            name: generated if name == uuid_field else entry[name]
            for name, _ in op.fields
        }

    async def _call(
        self,
        op: TransformOp,
        inputs: list[Any],
        ctx: RowContext,
        evaluation: RowEvaluation,
        previous_memos: dict[str, Any],
    ) -> Any:
        call_hash = None
        if op.cache:
            call_hash = compute_call_hash(op, inputs)
            for memos in (evaluation.memos, previous_memos):
                if call_hash in memos:
                    evaluation.memo_hits += 1
                    evaluation.memos[call_hash] = memos[call_hash]
                    return memos[call_hash]

        function = self._functions[id(op)]
        trace = self.tracer.start_step("call", op.spec.type, {"inputs": inputs}, ctx.key_path)
        try:
            output = await function.execute(inputs, ctx)
        except Exception as e:
            self.tracer.end_step(trace, error=e)
            raise TransformError(
                f"{op.spec.type} failed for row {'/'.join(str(k) for k in ctx.key_path)}: {e}",
                function_type=op.spec.type,
                key_path=ctx.key_path,
                cause=e,
            ) from e
        self.tracer.end_step(trace, {"output": output})
        evaluation.calls += 1

        if call_hash is not None:
            evaluation.memos[call_hash] = output
        return output
