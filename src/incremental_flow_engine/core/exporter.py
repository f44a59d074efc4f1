"""Export engine: applies mutation plans and reconciles target setup."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from .auth import AuthRegistry, resolve_auth_refs
from .diff import MutationPlan, compute_mutations
from .errors import (
    AuthEntryNotFoundError,
    SetupConfirmationRequired,
    SetupRequiredError,
    StorageError,
)
from .operations import ExportOp
from .persistence import StateStore
from .registry import ComponentRegistry
from .tracing import ExecutionTracer

if TYPE_CHECKING:
    from .builder import Flow
    from .component import Target

logger = logging.getLogger(__name__)


@dataclass
class SetupChange:
    """One target-level action of a setup or drop pass."""
    export_name: str
    action: str  # "create", "recreate", "drop", "unchanged"
    setup_by_user: bool = False

    @property
    def destructive(self) -> bool:
        return self.action in ("recreate", "drop")


@dataclass
class SetupPlan:
    flow_name: str
    changes: list[SetupChange] = field(default_factory=list)

    @property
    def destructive_exports(self) -> list[str]:
        return [c.export_name for c in self.changes if c.destructive]

    @property
    def is_noop(self) -> bool:
        return all(c.action == "unchanged" for c in self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow": self.flow_name,
            "changes": [
                {"export": c.export_name, "action": c.action, "setup_by_user": c.setup_by_user}
                for c in self.changes
            ],
        }


class ExportEngine:
    """
    Keeps the targets of one flow in sync with its collected entries.

    Each export's recorded state is only touched by that export's own
    pass, and only advanced after the target confirmed the batch.
    """

    def __init__(
        self,
        flow: "Flow",
        store: StateStore,
        registry: ComponentRegistry | None = None,
        tracer: ExecutionTracer | None = None,
        auth_registry: AuthRegistry | None = None,
    ):
        self.flow = flow
        self.store = store
        self.registry = registry or ComponentRegistry.get_instance()
        self.tracer = tracer or ExecutionTracer()
        self.auth_registry = auth_registry or AuthRegistry.get_instance()

    def _create_target(self, export_name: str, target_spec: dict[str, Any]) -> "Target":
        """Instantiate a target from an encoded spec, resolving auth entries."""
        config = resolve_auth_refs(target_spec.get("config", {}), self.auth_registry)
        return self.registry.create(target_spec["type"], export_name, config)

    def create_target(self, export: ExportOp) -> "Target":
        return self._create_target(export.name, export.target.to_dict())

    # === Incremental apply ===

    def check_ready(self, export: ExportOp) -> None:
        """Raise SetupRequiredError unless the target is set up with the current schema."""
        recorded = self.store.load(self.flow.name).targets.get(export.name)
        if recorded is None or recorded.snapshot is None:
            raise SetupRequiredError(
                f"Export '{export.name}' of flow '{self.flow.name}' is not set up; run setup first"
            )
        if recorded.snapshot != self.flow.schema_snapshot(export.name):
            raise SetupRequiredError(
                f"Export '{export.name}' of flow '{self.flow.name}' changed; run setup to recreate it"
            )

    def plan(self, export: ExportOp, entries: list[dict[str, Any]]) -> MutationPlan:
        recorded = self.store.load(self.flow.name).target(export.name)
        return compute_mutations(export.name, export.primary_key_fields, entries, recorded)

    async def apply(self, export: ExportOp, plan: MutationPlan) -> None:
        """
        Send a plan to the target, then record it.

        Raises:
            StorageError: the target rejected the batch; nothing is recorded
        """
        if plan.is_empty:
            return
        trace = self.tracer.start_step("apply", export.target.type, plan.summary())
        try:
            target = self.create_target(export)
            await target.apply(
                list(plan.deletes),
                [(key, values) for key, values, _ in plan.upserts],
            )
        except AuthEntryNotFoundError as e:
            self.tracer.end_step(trace, error=e)
            raise
        except Exception as e:
            self.tracer.end_step(trace, error=e)
            raise StorageError(
                f"Export '{export.name}' failed to apply {plan.summary()}: {e}",
                export_name=export.name,
                cause=e,
            ) from e
        self.tracer.end_step(trace, plan.summary())

        self.store.record_applied(
            self.flow.name,
            export.name,
            deletes=list(plan.deletes),
            upserts=[(key, content_hash) for key, _, content_hash in plan.upserts],
        )
        logger.debug("Export '%s': applied %s", export.name, plan.summary())

    # === Setup reconciliation ===

    def plan_setup(self) -> SetupPlan:
        """Compare declared exports with recorded target snapshots."""
        state = self.store.load(self.flow.name)
        plan = SetupPlan(self.flow.name)
        for name, export in self.flow.exports.items():
            recorded = state.targets.get(name)
            if recorded is None or recorded.snapshot is None:
                action = "create"
            elif recorded.snapshot != self.flow.schema_snapshot(name):
                action = "recreate"
            else:
                action = "unchanged"
            plan.changes.append(SetupChange(name, action, export.setup_by_user))
        for name in sorted(state.targets):
            if name not in self.flow.exports:
                snapshot = state.targets[name].snapshot or {}
                plan.changes.append(SetupChange(name, "drop", snapshot.get("setup_by_user", False)))
        return plan

    async def setup(self, confirm: bool = False) -> SetupPlan:
        """
        Create, recreate or drop targets so they match the declared exports.

        Raises:
            SetupConfirmationRequired: a target would lose data and confirm is False
        """
        plan = self.plan_setup()
        destructive = plan.destructive_exports
        if destructive and not confirm:
            raise SetupConfirmationRequired(self.flow.name, destructive)

        state = self.store.load(self.flow.name)
        for change in plan.changes:
            if change.action in ("recreate", "drop"):
                await self._drop_recorded(change.export_name, state.targets[change.export_name].snapshot)
            if change.action in ("create", "recreate"):
                export = self.flow.exports[change.export_name]
                snapshot = self.flow.schema_snapshot(change.export_name)
                if not export.setup_by_user:
                    target = self.create_target(export)
                    trace = self.tracer.start_step("setup", export.target.type)
                    try:
                        await target.setup(self.flow.target_schema(change.export_name))
                    except Exception as e:
                        self.tracer.end_step(trace, error=e)
                        raise StorageError(
                            f"Setup of export '{export.name}' failed: {e}",
                            export_name=export.name,
                            cause=e,
                        ) from e
                    self.tracer.end_step(trace)
                self.store.record_setup(self.flow.name, change.export_name, snapshot)
                logger.info("Export '%s': %s", change.export_name, change.action)
        return plan

    async def drop_all(self) -> SetupPlan:
        """Drop every recorded target of the flow."""
        state = self.store.load(self.flow.name)
        plan = SetupPlan(self.flow.name)
        for name in sorted(state.targets):
            snapshot = state.targets[name].snapshot or {}
            await self._drop_recorded(name, state.targets[name].snapshot)
            plan.changes.append(SetupChange(name, "drop", snapshot.get("setup_by_user", False)))
        return plan

    async def _drop_recorded(self, export_name: str, snapshot: dict[str, Any] | None) -> None:
        """Drop a target as it was recorded, which may differ from its declaration."""
        if snapshot is not None and not snapshot.get("setup_by_user", False):
            target = self._create_target(export_name, snapshot["target"])
            trace = self.tracer.start_step("drop", snapshot["target"]["type"])
            try:
                await target.drop()
            except Exception as e:
                self.tracer.end_step(trace, error=e)
                raise StorageError(
                    f"Drop of export '{export_name}' failed: {e}",
                    export_name=export_name,
                    cause=e,
                ) from e
            self.tracer.end_step(trace)
        self.store.record_dropped(self.flow.name, export_name)
        logger.info("Export '%s': dropped", export_name)
