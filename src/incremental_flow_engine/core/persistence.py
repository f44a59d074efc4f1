"""Persisted flow state as an append-only event log.

Each flow gets a directory under the state dir holding `state.jsonl`.
Every change to recorded state is an event appended to that log, and the
in-memory state is rebuilt on load by replaying the events in order:

    row_committed   - an import row was evaluated; its entries and markers
    row_removed     - an import row disappeared from its source
    source_cursor   - native change feed cursor for an import
    source_retry    - keys of a native-diff import to re-read next cycle
    import_dropped  - an import was removed from the flow definition
    target_setup    - a target was created with a schema snapshot
    target_applied  - a batch of deletes/upserts was confirmed by a target
    target_dropped  - a target was dropped
    snapshot        - full state (written by compact())

Live updates and replay go through the same `_apply_event`, so the state
after a restart is exactly the state before it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .codec import from_jsonable, key_str, to_jsonable

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.jsonl"


@dataclass
class RowState:
    """What was last committed for one import row."""
    key: Any
    version: str | None
    fingerprint: str
    logic: str
    # collector id -> entries produced by this row
    entries: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    # call hash -> output, for functions with cache=True
    memos: dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceState:
    rows: dict[str, RowState] = field(default_factory=dict)
    cursor: str | None = None
    # key_str -> key, rows of a native-diff import that failed last cycle
    retry: dict[str, Any] = field(default_factory=dict)


@dataclass
class TargetState:
    snapshot: dict[str, Any] | None = None
    # key_str -> primary key value / content hash, for keys believed present
    keys: dict[str, Any] = field(default_factory=dict)
    hashes: dict[str, str] = field(default_factory=dict)


@dataclass
class FlowState:
    """In-memory state of one flow, built from its event log."""
    flow_name: str = ""
    sources: dict[str, SourceState] = field(default_factory=dict)
    targets: dict[str, TargetState] = field(default_factory=dict)
    total_events: int = 0

    def source(self, import_name: str) -> SourceState:
        return self.sources.setdefault(import_name, SourceState())

    def target(self, export_name: str) -> TargetState:
        return self.targets.setdefault(export_name, TargetState())

    def entries(self, collector_id: str) -> list[dict[str, Any]]:
        """All committed entries of a collector, across imports and rows."""
        result: list[dict[str, Any]] = []
        for source in self.sources.values():
            for row in source.rows.values():
                result.extend(row.entries.get(collector_id, ()))
        return result

    def summary(self) -> dict[str, Any]:
        return {
            "flow": self.flow_name,
            "events": self.total_events,
            "imports": {
                name: {
                    "rows": len(s.rows),
                    "cursor": s.cursor,
                    "pending_retry": len(s.retry),
                }
                for name, s in sorted(self.sources.items())
            },
            "exports": {
                name: {
                    "set_up": t.snapshot is not None,
                    "keys": len(t.keys),
                }
                for name, t in sorted(self.targets.items())
            },
        }


def _encode_row(row: RowState) -> dict[str, Any]:
    return {
        "key": to_jsonable(row.key),
        "version": row.version,
        "fingerprint": row.fingerprint,
        "logic": row.logic,
        "entries": to_jsonable(row.entries),
        "memos": to_jsonable(row.memos),
    }


def _decode_row(data: dict[str, Any]) -> RowState:
    return RowState(
        key=from_jsonable(data["key"]),
        version=data.get("version"),
        fingerprint=data["fingerprint"],
        logic=data["logic"],
        entries=from_jsonable(data.get("entries", {})),
        memos=from_jsonable(data.get("memos", {})),
    )


def _encode_state(state: FlowState) -> dict[str, Any]:
    return {
        "sources": {
            name: {
                "rows": [_encode_row(r) for r in s.rows.values()],
                "cursor": s.cursor,
                "retry": [to_jsonable(k) for k in s.retry.values()],
            }
            for name, s in state.sources.items()
        },
        "targets": {
            name: {
                "snapshot": t.snapshot,
                "rows": [[to_jsonable(t.keys[k]), t.hashes[k]] for k in t.keys],
            }
            for name, t in state.targets.items()
        },
    }


def _apply_event(state: FlowState, event: dict[str, Any]) -> None:
    """Apply one event to the in-memory state."""
    event_type = event.get("type")

    if event_type == "row_committed":
        row = _decode_row(event["row"])
        state.source(event["import"]).rows[key_str(row.key)] = row

    elif event_type == "row_removed":
        source = state.source(event["import"])
        source.rows.pop(key_str(from_jsonable(event["key"])), None)

    elif event_type == "source_cursor":
        state.source(event["import"]).cursor = event.get("cursor")

    elif event_type == "source_retry":
        keys = [from_jsonable(k) for k in event.get("keys", [])]
        state.source(event["import"]).retry = {key_str(k): k for k in keys}

    elif event_type == "import_dropped":
        state.sources.pop(event["import"], None)

    elif event_type == "target_setup":
        target = state.target(event["export"])
        if event.get("reset", True):
            target.keys.clear()
            target.hashes.clear()
        target.snapshot = event.get("snapshot")

    elif event_type == "target_applied":
        target = state.target(event["export"])
        for raw in event.get("deletes", []):
            k = key_str(from_jsonable(raw))
            target.keys.pop(k, None)
            target.hashes.pop(k, None)
        for raw, content_hash in event.get("upserts", []):
            key = from_jsonable(raw)
            k = key_str(key)
            target.keys[k] = key
            target.hashes[k] = content_hash

    elif event_type == "target_dropped":
        state.targets.pop(event["export"], None)

    elif event_type == "snapshot":
        snapshot = event["state"]
        state.sources.clear()
        state.targets.clear()
        for name, s in snapshot.get("sources", {}).items():
            source = state.source(name)
            source.cursor = s.get("cursor")
            for raw in s.get("rows", []):
                row = _decode_row(raw)
                source.rows[key_str(row.key)] = row
            source.retry = {key_str(k): k for k in (from_jsonable(r) for r in s.get("retry", []))}
        for name, t in snapshot.get("targets", {}).items():
            target = state.target(name)
            target.snapshot = t.get("snapshot")
            for raw, content_hash in t.get("rows", []):
                key = from_jsonable(raw)
                target.keys[key_str(key)] = key
                target.hashes[key_str(key)] = content_hash


class StateStore:
    """
    Loads and records flow state.

    Usage:
        store = StateStore(Path("~/.local/state/incremental-flow"))
        state = store.load("docs_index")
        store.record_applied("docs_index", "doc_index", deletes=[...], upserts=[...])

    StateStore(None) keeps everything in memory.
    """

    def __init__(self, state_dir: Path | str | None = None):
        self.state_dir = Path(state_dir).expanduser() if state_dir is not None else None
        self._states: dict[str, FlowState] = {}

    def _get_state_path(self, flow_name: str) -> Path | None:
        if self.state_dir is None:
            return None
        return self.state_dir / flow_name / STATE_FILE_NAME

    def _log_event(self, flow_name: str, event_type: str, data: dict[str, Any]) -> None:
        """Append an event to the flow's log, then apply it to memory.

        Memory never runs ahead of the log: an event that cannot be
        serialized or written leaves the state untouched.
        """
        state = self.load(flow_name)
        event = {"type": event_type, **data}
        line = json.dumps({"timestamp": datetime.now().isoformat(), **event}, ensure_ascii=False)

        state_file = self._get_state_path(flow_name)
        if state_file is not None:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(state_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

        _apply_event(state, event)
        state.total_events += 1

    def load(self, flow_name: str) -> FlowState:
        """State of a flow, replaying its log on first access."""
        if flow_name in self._states:
            return self._states[flow_name]

        state = FlowState(flow_name=flow_name)
        state_file = self._get_state_path(flow_name)
        if state_file is not None and state_file.exists():
            skipped = 0
            with open(state_file, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        # Partial line from a crash mid-write
                        skipped += 1
                        continue
                    _apply_event(state, event)
                    state.total_events += 1
            if skipped:
                logger.warning("Skipped %d malformed line(s) in %s", skipped, state_file)
            logger.debug("Loaded %d events for flow '%s'", state.total_events, flow_name)

        self._states[flow_name] = state
        return state

    def flow_names(self) -> list[str]:
        """Flows with state on disk (or in memory)."""
        names = set(self._states)
        if self.state_dir is not None and self.state_dir.exists():
            names.update(
                p.parent.name for p in self.state_dir.glob(f"*/{STATE_FILE_NAME}")
            )
        return sorted(names)

    # === Event recording ===

    def commit_row(self, flow_name: str, import_name: str, row: RowState) -> None:
        self._log_event(flow_name, "row_committed", {"import": import_name, "row": _encode_row(row)})

    def remove_row(self, flow_name: str, import_name: str, key: Any) -> None:
        self._log_event(flow_name, "row_removed", {"import": import_name, "key": to_jsonable(key)})

    def set_cursor(self, flow_name: str, import_name: str, cursor: str | None) -> None:
        self._log_event(flow_name, "source_cursor", {"import": import_name, "cursor": cursor})

    def set_retry(self, flow_name: str, import_name: str, keys: list[Any]) -> None:
        self._log_event(flow_name, "source_retry", {
            "import": import_name,
            "keys": [to_jsonable(k) for k in keys],
        })

    def drop_import(self, flow_name: str, import_name: str) -> None:
        self._log_event(flow_name, "import_dropped", {"import": import_name})

    def record_setup(
        self,
        flow_name: str,
        export_name: str,
        snapshot: dict[str, Any],
        reset: bool = True,
    ) -> None:
        """Record a target's schema snapshot. reset=True forgets recorded keys."""
        self._log_event(flow_name, "target_setup", {
            "export": export_name,
            "snapshot": snapshot,
            "reset": reset,
        })

    def record_applied(
        self,
        flow_name: str,
        export_name: str,
        deletes: list[Any],
        upserts: list[tuple[Any, str]],
    ) -> None:
        if not deletes and not upserts:
            return
        self._log_event(flow_name, "target_applied", {
            "export": export_name,
            "deletes": [to_jsonable(k) for k in deletes],
            "upserts": [[to_jsonable(k), h] for k, h in upserts],
        })

    def record_dropped(self, flow_name: str, export_name: str) -> None:
        self._log_event(flow_name, "target_dropped", {"export": export_name})

    # === Maintenance ===

    def compact(self, flow_name: str) -> None:
        """Rewrite the log as a single snapshot event."""
        state = self.load(flow_name)
        state_file = self._get_state_path(flow_name)
        state.total_events = 1
        if state_file is None:
            return
        state_file.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "timestamp": datetime.now().isoformat(),
            "type": "snapshot",
            "state": _encode_state(state),
        }
        tmp_file = state_file.with_suffix(".jsonl.tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
        tmp_file.replace(state_file)
        logger.info("Compacted state of flow '%s'", flow_name)

    def clear(self, flow_name: str) -> None:
        """Forget all state of a flow."""
        self._states.pop(flow_name, None)
        state_file = self._get_state_path(flow_name)
        if state_file is not None and state_file.exists():
            state_file.unlink()
