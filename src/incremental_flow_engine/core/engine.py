"""Incremental flow execution engine."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from .auth import AuthRegistry, collect_auth_keys, resolve_auth_refs
from .builder import Flow
from .codec import fingerprint, key_str
from .component import Source
from .errors import DataflowError, ErrorRecord, SourceError, TransformError
from .evaluator import RowEvaluator
from .exporter import ExportEngine, SetupPlan
from .operations import ExportOp, ImportOp
from .persistence import RowState, SourceState, StateStore
from .registry import ComponentRegistry, FlowRegistry
from .tracing import ExecutionTrace, ExecutionTracer, TraceLevel

logger = logging.getLogger(__name__)


@dataclass
class UpdateResult:
    """Run report of one update cycle."""
    flow: str
    success: bool
    errors: list[ErrorRecord] = field(default_factory=list)
    duration_seconds: float = 0.0
    stats: dict[str, Any] = field(default_factory=dict)
    traces: list[ExecutionTrace] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow": self.flow,
            "success": self.success,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "stats": self.stats,
            "errors": [
                {
                    "error_type": e.error_type,
                    "message": e.message,
                    "import": e.import_name,
                    "export": e.export_name,
                    "key": None if e.key is None else str(e.key),
                }
                for e in self.errors
            ],
            "traces": [t.to_dict() for t in self.traces],
        }


@dataclass
class SetupReport:
    """Outcome of a setup or drop pass."""
    flow: str
    plan: SetupPlan
    removed_auth_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {**self.plan.to_dict(), "removed_auth_keys": self.removed_auth_keys}


@dataclass
class _ChangeSet:
    """Keys to (re)read and keys gone from a source in one cycle."""
    candidates: list[Any]
    removed: list[Any]
    native: bool = False
    cursor: str | None = None


class _UpdateRun:
    """Mutable bookkeeping of one update() call."""

    def __init__(self, flow: Flow, tracer: ExecutionTracer, cancel_event: asyncio.Event | None):
        self.flow = flow
        self.tracer = tracer
        self.cancel_event = cancel_event
        self.errors: list[ErrorRecord] = []
        self.stats: dict[str, Any] = {
            "rows_processed": 0,
            "rows_unchanged": 0,
            "rows_removed": 0,
            "rows_failed": 0,
            "rows_skipped": 0,
            "function_calls": 0,
            "memo_hits": 0,
            "exports": {},
        }

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def record(self, exc: Exception, **kwargs: Any) -> None:
        self.errors.append(ErrorRecord.from_exception(exc, flow=self.flow.name, **kwargs))


class FlowEngine:
    """
    Runs flows against their sources and keeps their targets in sync.

    Usage:
        engine = FlowEngine(StateStore(state_dir), max_concurrent=8)
        await engine.setup(flow)
        result = await engine.update(flow)

    Errors of single rows, imports or exports are recorded on the result
    and retried on the next cycle; only definition errors and setup
    failures raise.
    """

    def __init__(
        self,
        store: StateStore | None = None,
        max_concurrent: int = 8,
        trace_level: TraceLevel = TraceLevel.ERRORS,
        registry: ComponentRegistry | None = None,
        auth_registry: AuthRegistry | None = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store if store is not None else StateStore(None)
        self.max_concurrent = max_concurrent
        self.trace_level = trace_level
        self.registry = registry or ComponentRegistry.get_instance()
        self.auth_registry = auth_registry or AuthRegistry.get_instance()

    # === Update ===

    async def update(
        self,
        flow: Flow,
        imports: Iterable[str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> UpdateResult:
        """
        Run one incremental update cycle.

        Args:
            flow: The flow to update
            imports: Only re-scan these imports (default: all). Exports are
                     always reconciled against every import's entries.
            cancel_event: When set, rows not yet started are skipped and
                          left for the next cycle
        """
        start_time = time.time()
        run = _UpdateRun(flow, ExecutionTracer(level=self.trace_level), cancel_event)

        names = list(flow.imports) if imports is None else list(imports)
        for name in names:
            if name not in flow.imports:
                raise ValueError(f"Flow '{flow.name}' has no import '{name}'")

        await asyncio.gather(*(self._update_import(run, flow.imports[n]) for n in names))
        await self._update_exports(run)

        result = UpdateResult(
            flow=flow.name,
            success=not run.errors,
            errors=run.errors,
            duration_seconds=time.time() - start_time,
            stats=run.stats,
            traces=run.tracer.traces,
            cancelled=run.cancelled,
        )
        stats = run.stats
        logger.info(
            "Flow '%s': %d processed, %d unchanged, %d removed, %d failed, %d skipped in %.2fs",
            flow.name,
            stats["rows_processed"],
            stats["rows_unchanged"],
            stats["rows_removed"],
            stats["rows_failed"],
            stats["rows_skipped"],
            result.duration_seconds,
        )
        return result

    def _create_source(self, import_op: ImportOp) -> Source:
        config = resolve_auth_refs(import_op.spec.encoded_config(), self.auth_registry)
        return self.registry.create(import_op.spec.type, import_op.name, config)

    async def _changed_keys(self, source: Source, import_op: ImportOp, src_state: SourceState, logic: str) -> _ChangeSet:
        """Decide which keys to read this cycle."""
        recorded = {k: row.key for k, row in src_state.rows.items()}
        logic_changed = any(row.logic != logic for row in src_state.rows.values())
        mode = import_op.change_detection
        native = mode == "native" or (mode == "auto" and source.supports_diff())

        if native:
            # A changed definition needs every row again, so ask for everything
            since = None if logic_changed else src_state.cursor
            diff = await source.diff(since)
            changed = {key_str(k): k for k in (*diff.added, *diff.updated)}
            if since is None:
                removed = [key for k, key in recorded.items() if k not in changed]
            else:
                removed = list(diff.removed)
                changed = {**src_state.retry, **changed}
                for key in removed:
                    changed.pop(key_str(key), None)
            return _ChangeSet(list(changed.values()), removed, native=True, cursor=diff.cursor)

        current = {key_str(k): k for k in await source.list_keys()}
        removed = [key for k, key in recorded.items() if k not in current]
        return _ChangeSet(list(current.values()), removed)

    async def _update_import(self, run: _UpdateRun, import_op: ImportOp) -> None:
        flow = run.flow
        name = import_op.name
        src_state = self.store.load(flow.name).source(name)
        logic = flow.logic_fingerprint(name)

        trace = run.tracer.start_step("read", import_op.spec.type)
        try:
            source = self._create_source(import_op)
            evaluator = RowEvaluator(flow, name, self.registry, run.tracer, self.auth_registry)
            changes = await self._changed_keys(source, import_op, src_state, logic)
        except Exception as e:
            run.tracer.end_step(trace, error=e)
            if not isinstance(e, DataflowError):
                e = SourceError(f"Import '{name}' failed: {e}", import_name=name, cause=e)
            logger.warning("Flow '%s': %s", flow.name, e)
            run.record(e, import_name=name)
            return
        run.tracer.end_step(trace, {"candidates": len(changes.candidates), "removed": len(changes.removed)})

        for key in changes.removed:
            if key_str(key) in src_state.rows:
                self.store.remove_row(flow.name, name, key)
                run.stats["rows_removed"] += 1

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def process(key: Any) -> str:
            async with semaphore:
                if run.cancelled:
                    return "skipped"
                return await self._process_row(run, source, evaluator, name, key, src_state, logic)

        statuses = await asyncio.gather(*(process(k) for k in changes.candidates))

        pending = []
        for key, status in zip(changes.candidates, statuses):
            run.stats[f"rows_{status}"] += 1
            if status in ("failed", "skipped"):
                pending.append(key)

        if changes.native:
            if pending or src_state.retry:
                self.store.set_retry(flow.name, name, pending)
            if changes.cursor != src_state.cursor:
                self.store.set_cursor(flow.name, name, changes.cursor)

    async def _process_row(
        self,
        run: _UpdateRun,
        source: Source,
        evaluator: RowEvaluator,
        import_name: str,
        key: Any,
        src_state: SourceState,
        logic: str,
    ) -> str:
        """Read one key and re-evaluate it if it changed. Returns its status."""
        flow_name = run.flow.name
        try:
            row = await source.read(key)
        except Exception as e:
            error = SourceError(
                f"Import '{import_name}': reading key {key!r} failed: {e}",
                import_name=import_name,
                key=key,
                cause=e,
            )
            logger.warning("Flow '%s': %s", flow_name, error)
            run.record(error, import_name=import_name, key=key)
            return "failed"

        previous = src_state.rows.get(key_str(key))
        if row is None:
            # Vanished between listing and reading
            if previous is None:
                return "unchanged"
            self.store.remove_row(flow_name, import_name, key)
            return "removed"

        try:
            content_fp = fingerprint(row.value)
        except TypeError as e:
            error = SourceError(
                f"Import '{import_name}': value of key {key!r} is not serializable: {e}",
                import_name=import_name,
                key=key,
                cause=e,
            )
            logger.warning("Flow '%s': %s", flow_name, error)
            run.record(error, import_name=import_name, key=key)
            return "failed"

        if previous is not None and previous.logic == logic:
            if row.version is not None and row.version == previous.version:
                return "unchanged"
            if previous.fingerprint == content_fp:
                return "unchanged"

        try:
            evaluation = await evaluator.evaluate(
                key, row.value, previous.memos if previous is not None else None
            )
            self.store.commit_row(flow_name, import_name, RowState(
                key=key,
                version=row.version,
                fingerprint=content_fp,
                logic=logic,
                entries=evaluation.entries,
                memos=evaluation.memos,
            ))
        except (TransformError, TypeError) as e:
            logger.warning("Flow '%s', import '%s', key %r: %s", flow_name, import_name, key, e)
            run.record(e, import_name=import_name, key=key)
            return "failed"

        run.stats["function_calls"] += evaluation.calls
        run.stats["memo_hits"] += evaluation.memo_hits
        return "processed"

    async def _update_exports(self, run: _UpdateRun) -> None:
        """Diff and apply every export; exports are independent of each other."""
        flow = run.flow
        exporter = ExportEngine(flow, self.store, self.registry, run.tracer, self.auth_registry)
        state = self.store.load(flow.name)

        async def update_export(export: ExportOp) -> None:
            try:
                exporter.check_ready(export)
                entries = [
                    entry
                    for import_name in flow.imports
                    for row in state.sources.get(import_name, SourceState()).rows.values()
                    for entry in row.entries.get(export.collector_id, ())
                ]
                plan = exporter.plan(export, entries)
                # An apply that has started completes even if the cycle is cancelled
                await asyncio.shield(exporter.apply(export, plan))
            except DataflowError as e:
                logger.error("Flow '%s': %s", flow.name, e)
                run.record(e, export_name=export.name)
                return
            run.stats["exports"][export.name] = plan.summary()

        await asyncio.gather(*(update_export(e) for e in flow.exports.values()))

    # === Setup / drop ===

    async def setup(self, flow: Flow, confirm: bool = False) -> SetupReport:
        """
        Reconcile targets with the flow's declared exports.

        Raises:
            SetupConfirmationRequired: targets would be dropped or recreated
            StorageError: a target failed to set up or drop
        """
        exporter = ExportEngine(flow, self.store, self.registry, auth_registry=self.auth_registry)
        plan = await exporter.setup(confirm=confirm)

        state = self.store.load(flow.name)
        for import_name in sorted(state.sources):
            if import_name not in flow.imports:
                self.store.drop_import(flow.name, import_name)
                logger.info("Flow '%s': dropped state of removed import '%s'", flow.name, import_name)

        removed = self.cleanup_auth_entries(flow)
        return SetupReport(flow.name, plan, removed)

    async def drop(self, flow: Flow) -> SetupReport:
        """Drop every target of the flow and forget its state."""
        exporter = ExportEngine(flow, self.store, self.registry, auth_registry=self.auth_registry)
        plan = await exporter.drop_all()
        self.store.clear(flow.name)
        removed = self.cleanup_auth_entries(flow)
        return SetupReport(flow.name, plan, removed)

    def cleanup_auth_entries(self, flow: Flow | None = None) -> list[str]:
        """
        Remove auth entries referenced neither by a registered flow nor by
        any recorded target. Returns the removed keys.
        """
        referenced: set[str] = set()
        flows = FlowRegistry.get_instance().all()
        if flow is not None:
            flows.append(flow)
        for f in flows:
            referenced |= f.auth_keys()
        for flow_name in self.store.flow_names():
            for target in self.store.load(flow_name).targets.values():
                if target.snapshot is not None:
                    referenced |= collect_auth_keys(target.snapshot.get("target", {}))

        removed = sorted(self.auth_registry.list_keys() - referenced)
        for key in removed:
            self.auth_registry.remove(key)
            logger.info("Removed orphaned auth entry '%s'", key)
        return removed

    # === Inspection ===

    def show(self, flow: Flow) -> dict[str, Any]:
        """Definition, recorded state and pending setup changes of a flow."""
        exporter = ExportEngine(flow, self.store, self.registry, auth_registry=self.auth_registry)
        return {
            "flow": flow.name,
            "description": flow.describe(),
            "state": self.store.load(flow.name).summary(),
            "setup": exporter.plan_setup().to_dict(),
        }

    def compact(self, flow: Flow) -> None:
        self.store.compact(flow.name)
