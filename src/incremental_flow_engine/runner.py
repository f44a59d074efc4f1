#!/usr/bin/env python3
"""
Incremental Flow Engine Runner

Usage:
    incremental-flow ls APP                       # List flows registered by APP
    incremental-flow show APP [FLOW]              # Show flow definition and state
    incremental-flow setup APP [FLOW...]          # Create/update targets
    incremental-flow drop APP [FLOW...]           # Drop targets and state
    incremental-flow update APP [FLOW...]         # One incremental update
    incremental-flow update APP [FLOW...] --live  # Keep updating until Ctrl-C

APP is a module name or a path to a .py file; importing it registers flows.

Options:
    --config PATH     Config file (default: config.local.yaml)
    --state-dir DIR   Override state_dir from config
    --quiet / --debug Log verbosity
    --trace           Print every update step with inputs and outputs
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import importlib.util
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from .config import ConfigError, load_config
from .core import (
    DataflowError,
    Flow,
    FlowEngine,
    FlowRegistry,
    LiveUpdater,
    SetupConfirmationRequired,
    StateStore,
    TraceLevel,
    UpdateResult,
)

logger = logging.getLogger(__name__)


def setup_logging(quiet: bool = False, debug: bool = False) -> None:
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.WARNING
    elif debug:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )

    # Suppress library loggers unless in debug mode
    if not debug:
        for name in ("httpx", "httpcore", "uvicorn", "uvicorn.access"):
            logging.getLogger(name).setLevel(logging.WARNING)


def load_app(app: str) -> None:
    """Import the module that registers flows (module name or .py path)."""
    # Built-in components must be registered before flows are built
    from . import components  # noqa: F401

    path = Path(app)
    if app.endswith(".py") or path.exists():
        if not path.exists():
            raise FileNotFoundError(f"App file not found: {app}")
        module_name = path.stem
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load app from {app}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        spec.loader.exec_module(module)
    else:
        importlib.import_module(app)


def select_flows(names: list[str] | None) -> list[Flow]:
    """Registered flows by name (all of them when no names are given)."""
    registry = FlowRegistry.get_instance()
    if not names:
        return registry.all()
    return [registry.get(name) for name in names]


def create_engine(config: dict[str, Any], debug: bool = False, trace: bool = False) -> FlowEngine:
    if trace:
        trace_level = TraceLevel.DETAILED
    elif debug:
        trace_level = TraceLevel.STEPS
    else:
        trace_level = TraceLevel.ERRORS
    return FlowEngine(
        StateStore(config["state_dir"]),
        max_concurrent=config["execution"]["max_concurrent"],
        trace_level=trace_level,
    )


def confirm(prompt: str) -> bool:
    """Ask a yes/no question; non-interactive sessions answer no."""
    if not sys.stdin.isatty():
        return False
    try:
        answer = input(f"{prompt} [y/N]: ").strip().lower()
    except (KeyboardInterrupt, EOFError):
        print("\nCancelled.")
        return False
    return answer in ("y", "yes")


def print_result(result: UpdateResult, trace_level: TraceLevel = TraceLevel.ERRORS) -> None:
    stats = result.stats
    print()
    print("=" * 60)
    print(f"UPDATE {result.flow}: {'COMPLETE' if result.success else 'FINISHED WITH ERRORS'}")
    print("=" * 60)
    print(f"Duration: {result.duration_seconds:.2f}s")
    print(
        f"Rows: {stats['rows_processed']} processed, {stats['rows_unchanged']} unchanged, "
        f"{stats['rows_removed']} removed, {stats['rows_failed']} failed"
    )
    for name, counts in sorted(stats["exports"].items()):
        print(f"  {name}: {counts['upserts']} upserted, {counts['deletes']} deleted")

    if result.errors:
        print(f"\nErrors: {len(result.errors)}")
        for err in result.errors:
            where = err.export_name or err.import_name or result.flow
            key = f" key={err.key!r}" if err.key is not None else ""
            print(f"  [{err.error_type}] {where}{key}: {err.message}")

    if trace_level is TraceLevel.DETAILED:
        title, steps = "Steps", result.traces
    elif trace_level is TraceLevel.STEPS:
        title, steps = "Failed steps", [t for t in result.traces if not t.success]
    else:
        title, steps = "", []
    if steps:
        print(f"\n{title}:")
        for trace in steps:
            print(trace.format_detailed())


# === Commands ===

def cmd_ls(args: argparse.Namespace, engine: FlowEngine) -> int:
    flows = select_flows(None)
    if not flows:
        print("No flows registered.")
        return 0
    print(f"{'Flow Name':<28} {'Imports':<24} {'Exports'}")
    print("-" * 80)
    for flow in flows:
        print(f"{flow.name:<28} {', '.join(flow.imports):<24} {', '.join(flow.exports)}")
    return 0


def cmd_show(args: argparse.Namespace, engine: FlowEngine) -> int:
    for flow in select_flows(args.flows):
        info = engine.show(flow)
        print(info["description"])
        state = info["state"]
        print(f"\nState ({state['events']} events):")
        for name, s in state["imports"].items():
            print(f"  import {name}: {s['rows']} rows, {s['pending_retry']} pending retry")
        for name, t in state["exports"].items():
            print(f"  export {name}: {t['keys']} keys{'' if t['set_up'] else ' (not set up)'}")
        pending = [c for c in info["setup"]["changes"] if c["action"] != "unchanged"]
        if pending:
            print("\nPending setup changes:")
            for change in pending:
                print(f"  {change['export']}: {change['action']}")
        print()
    return 0


async def _setup(flows: list[Flow], engine: FlowEngine, force: bool) -> int:
    for flow in flows:
        try:
            report = await engine.setup(flow, confirm=force)
        except SetupConfirmationRequired as e:
            print(str(e))
            if not confirm(f"Drop and recreate {', '.join(e.export_names)}?"):
                print("Setup cancelled.")
                return 1
            report = await engine.setup(flow, confirm=True)
        for change in report.plan.changes:
            if change.action != "unchanged":
                print(f"{flow.name}.{change.export_name}: {change.action}")
        for key in report.removed_auth_keys:
            print(f"Removed orphaned auth entry: {key}")
        if report.plan.is_noop:
            print(f"{flow.name}: up to date")
    return 0


def cmd_setup(args: argparse.Namespace, engine: FlowEngine) -> int:
    return asyncio.run(_setup(select_flows(args.flows), engine, args.force))


async def _drop(flows: list[Flow], engine: FlowEngine) -> int:
    for flow in flows:
        report = await engine.drop(flow)
        for change in report.plan.changes:
            print(f"{flow.name}.{change.export_name}: dropped")
        for key in report.removed_auth_keys:
            print(f"Removed orphaned auth entry: {key}")
    return 0


def cmd_drop(args: argparse.Namespace, engine: FlowEngine) -> int:
    flows = select_flows(args.flows)
    if not args.force:
        names = ", ".join(f.name for f in flows)
        if not confirm(f"Drop all targets and state of {names}?"):
            print("Drop cancelled.")
            return 1
    return asyncio.run(_drop(flows, engine))


async def _update(flows: list[Flow], engine: FlowEngine) -> int:
    exit_code = 0
    for flow in flows:
        result = await engine.update(flow)
        print_result(result, engine.trace_level)
        if not result.success:
            exit_code = 1
    return exit_code


async def _live(flows: list[Flow], engine: FlowEngine, refresh_interval: float) -> int:
    failures = []

    def on_result(result: UpdateResult) -> None:
        print_result(result, engine.trace_level)
        if not result.success:
            failures.append(result)

    updaters = [LiveUpdater(engine, flow, refresh_interval, on_result) for flow in flows]

    def stop_all() -> None:
        logger.info("Stopping live update...")
        for updater in updaters:
            updater.stop()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_all)
        loop.add_signal_handler(signal.SIGTERM, stop_all)
    except NotImplementedError:
        # No signal handlers on this platform; Ctrl-C raises KeyboardInterrupt
        pass

    await asyncio.gather(*(u.run() for u in updaters))
    return 1 if failures else 0


def cmd_update(args: argparse.Namespace, engine: FlowEngine, config: dict[str, Any]) -> int:
    flows = select_flows(args.flows)
    if args.live:
        return asyncio.run(_live(flows, engine, config["live"]["refresh_interval"]))
    return asyncio.run(_update(flows, engine))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="incremental-flow",
        description="Run incremental data-indexing flows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("--config", type=Path, help="Config file path")
    parser.add_argument("--state-dir", type=Path, help="Override state directory")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Only warnings and errors")
    verbosity.add_argument("--debug", action="store_true", help="Debug logging and step traces")
    parser.add_argument("--trace", action="store_true", help="Print every step with its inputs and outputs")

    sub = parser.add_subparsers(dest="command", required=True)

    ls = sub.add_parser("ls", help="List registered flows")
    ls.add_argument("app", help="Module name or .py file registering flows")

    show = sub.add_parser("show", help="Show flow definition and state")
    show.add_argument("app")
    show.add_argument("flows", nargs="*", metavar="FLOW")

    setup = sub.add_parser("setup", help="Create or update storage targets")
    setup.add_argument("app")
    setup.add_argument("flows", nargs="*", metavar="FLOW")
    setup.add_argument("--force", "-f", action="store_true", help="Recreate targets without asking")

    drop = sub.add_parser("drop", help="Drop storage targets and state")
    drop.add_argument("app")
    drop.add_argument("flows", nargs="*", metavar="FLOW")
    drop.add_argument("--force", "-f", action="store_true", help="Drop without asking")

    update = sub.add_parser("update", help="Run an incremental update")
    update.add_argument("app")
    update.add_argument("flows", nargs="*", metavar="FLOW")
    update.add_argument("--live", "-L", action="store_true", help="Keep updating until interrupted")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(quiet=args.quiet, debug=args.debug)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        for error in e.errors:
            print(f"Config error: {error}", file=sys.stderr)
        return 1
    if args.state_dir is not None:
        config["state_dir"] = str(args.state_dir)

    try:
        load_app(args.app)
        engine = create_engine(config, debug=args.debug, trace=args.trace)
        if args.command == "ls":
            return cmd_ls(args, engine)
        if args.command == "show":
            return cmd_show(args, engine)
        if args.command == "setup":
            return cmd_setup(args, engine)
        if args.command == "drop":
            return cmd_drop(args, engine)
        return cmd_update(args, engine, config)
    except (DataflowError, KeyError, ImportError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
