"""Continuous (live) update mode."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, TYPE_CHECKING

if TYPE_CHECKING:
    from .builder import Flow
    from .engine import FlowEngine, UpdateResult

logger = logging.getLogger(__name__)


class LiveUpdater:
    """
    Runs an initial update, then re-scans each import when its refresh
    interval elapses.

    Usage:
        updater = LiveUpdater(engine, flow, default_interval=30)
        task = asyncio.create_task(updater.run())
        ...
        updater.stop()
        await task

    stop() takes effect between row evaluations. Export applies already
    in progress complete first.
    """

    def __init__(
        self,
        engine: "FlowEngine",
        flow: "Flow",
        default_interval: float = 60.0,
        on_result: Callable[["UpdateResult"], None] | None = None,
    ):
        if default_interval <= 0:
            raise ValueError("default_interval must be positive")
        self.engine = engine
        self.flow = flow
        self.default_interval = default_interval
        self.on_result = on_result
        self.cycles = 0
        self.last_result: "UpdateResult | None" = None
        self._stop_event = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def interval_for(self, import_name: str) -> float:
        interval = self.flow.imports[import_name].refresh_interval
        return interval if interval is not None else self.default_interval

    def stop(self) -> None:
        """Ask the loop to stop after the rows currently being evaluated."""
        self._stop_event.set()

    async def _cycle(self, imports: list[str] | None) -> None:
        result = await self.engine.update(self.flow, imports=imports, cancel_event=self._stop_event)
        self.cycles += 1
        self.last_result = result
        if not result.success:
            logger.warning(
                "Flow '%s': live cycle %d finished with %d error(s)",
                self.flow.name, self.cycles, len(result.errors),
            )
        if self.on_result is not None:
            self.on_result(result)

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info("Flow '%s': starting live update", self.flow.name)
        await self._cycle(None)

        next_due = {
            name: loop.time() + self.interval_for(name)
            for name in self.flow.imports
        }
        while next_due and not self.stopped:
            wait = max(0.0, min(next_due.values()) - loop.time())
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass
            if self.stopped:
                break

            now = loop.time()
            due = sorted(name for name, at in next_due.items() if at <= now)
            if not due:
                continue
            await self._cycle(due)
            for name in due:
                next_due[name] = loop.time() + self.interval_for(name)

        logger.info("Flow '%s': live update stopped after %d cycle(s)", self.flow.name, self.cycles)
