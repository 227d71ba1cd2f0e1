"""
Pipeline scheduler: named stages on independent cadences.

Each started stage owns a timer task that fires the handler once right away
(after an optional start delay) and then every interval_sec. A tick that
fires while the previous run of the same stage is still going is skipped and
counted, never queued. Handler failures are caught, logged and counted; the
stage goes back to idle and keeps its schedule. Stages never block each other.

Handlers may be coroutine functions or plain callables; plain callables run
in a worker thread so blocking database work stays off the event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from backend_relgraph.relgraph_logging import bind_stage, get_logger

logger = get_logger(__name__)

Handler = Callable[[], Any] | Callable[[], Awaitable[Any]]


@dataclass
class Stage:
    """Process-local stage state."""

    name: str
    interval_sec: float
    handler: Handler
    start_delay_sec: float = 0.0
    timeout_sec: float | None = None
    running: bool = False
    last_run: float | None = None
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    last_error: str | None = None
    timer: asyncio.Task | None = field(default=None, repr=False)
    inflight: asyncio.Task | None = field(default=None, repr=False)

    @property
    def scheduled(self) -> bool:
        return self.timer is not None and not self.timer.done()

    def status(self) -> dict[str, Any]:
        last_run = (
            datetime.fromtimestamp(self.last_run, tz=timezone.utc).isoformat()
            if self.last_run is not None
            else None
        )
        return {
            "running": self.running,
            "lastRun": last_run,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "lastError": self.last_error,
            "interval": self.interval_sec,
        }


class Scheduler:
    """Registry of stages plus their timer tasks. Must be started from a running event loop."""

    def __init__(self) -> None:
        self._stages: dict[str, Stage] = {}
        self._inflight: set[asyncio.Task] = set()

    def register(
        self,
        name: str,
        interval_sec: float,
        handler: Handler,
        *,
        start_delay_sec: float = 0.0,
        timeout_sec: float | None = None,
    ) -> Stage:
        """Add a stage without starting it."""
        if name in self._stages:
            raise ValueError(f"stage already registered: {name}")
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        if start_delay_sec < 0:
            raise ValueError("start_delay_sec must be >= 0")
        if timeout_sec is not None and timeout_sec <= 0:
            raise ValueError("timeout_sec must be positive")
        stage = Stage(
            name=name,
            interval_sec=float(interval_sec),
            handler=handler,
            start_delay_sec=float(start_delay_sec),
            timeout_sec=timeout_sec,
        )
        self._stages[name] = stage
        logger.info("stage_registered", stage=name, interval_sec=stage.interval_sec, start_delay_sec=stage.start_delay_sec)
        return stage

    def names(self) -> list[str]:
        return list(self._stages)

    def get(self, name: str) -> Stage:
        try:
            return self._stages[name]
        except KeyError:
            raise KeyError(f"unknown stage: {name}") from None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, name: str) -> None:
        stage = self.get(name)
        if stage.scheduled:
            return
        stage.timer = asyncio.get_running_loop().create_task(self._timer_loop(stage), name=f"stage-timer:{name}")
        logger.info("stage_started", stage=name)

    def start_all(self) -> None:
        for name in self._stages:
            self.start(name)

    def stop(self, name: str) -> None:
        """Cancel future firings; a run already in flight continues."""
        stage = self.get(name)
        if stage.timer is not None:
            stage.timer.cancel()
            stage.timer = None
            logger.info("stage_stopped", stage=name)

    async def stop_all(self, *, drain: bool = False, drain_timeout_sec: float | None = None) -> bool:
        """
        Stop every timer. With drain=True, wait for in-flight runs to finish
        (up to drain_timeout_sec). Returns True when nothing is left running.
        """
        for name in self._stages:
            self.stop(name)
        pending = {t for t in self._inflight if not t.done()}
        if not drain or not pending:
            return not pending
        logger.info("scheduler_draining", inflight=len(pending), timeout_sec=drain_timeout_sec)
        _, still_pending = await asyncio.wait(pending, timeout=drain_timeout_sec)
        if still_pending:
            logger.warning(
                "scheduler_drain_timeout",
                stages=sorted(s.name for s in self._stages.values() if s.running),
            )
            return False
        logger.info("scheduler_drained")
        return True

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _timer_loop(self, stage: Stage) -> None:
        if stage.start_delay_sec > 0:
            await asyncio.sleep(stage.start_delay_sec)
        while True:
            self._fire(stage)
            await asyncio.sleep(stage.interval_sec)

    def _fire(self, stage: Stage) -> None:
        if stage.running:
            stage.skipped += 1
            logger.info("stage_skipped_still_running", stage=stage.name, skipped=stage.skipped)
            return
        stage.running = True
        task = asyncio.get_running_loop().create_task(self._invoke(stage), name=f"stage-run:{stage.name}")
        stage.inflight = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def run_once(self, name: str) -> bool:
        """Run one guarded invocation now. Returns False if the stage was already running."""
        stage = self.get(name)
        if stage.running:
            stage.skipped += 1
            logger.info("stage_skipped_still_running", stage=name, skipped=stage.skipped)
            return False
        stage.running = True
        await self._invoke(stage)
        return True

    async def _call(self, stage: Stage) -> Any:
        if inspect.iscoroutinefunction(stage.handler):
            return await stage.handler()
        result = await asyncio.to_thread(stage.handler)
        if inspect.isawaitable(result):
            return await result
        return result

    async def _invoke(self, stage: Stage) -> None:
        """
        Run the handler once. Caller has already set stage.running; it stays set
        until the handler has really returned. On timeout a coroutine handler is
        cancelled, but a handler running in a worker thread cannot be, so the stage
        stays busy (and later ticks are skipped) until that thread finishes.
        """
        log = bind_stage(stage.name)
        start = time.monotonic()
        work = asyncio.ensure_future(self._call(stage))
        self._inflight.add(work)
        work.add_done_callback(self._inflight.discard)
        try:
            if stage.timeout_sec is not None:
                await asyncio.wait_for(asyncio.shield(work), timeout=stage.timeout_sec)
            else:
                await work
        except asyncio.TimeoutError:
            stage.failures += 1
            stage.last_error = f"timed out after {stage.timeout_sec}s"
            log.warning("stage_timeout", timeout_sec=stage.timeout_sec)
            if inspect.iscoroutinefunction(stage.handler):
                work.cancel()
                await asyncio.wait({work})
        except asyncio.CancelledError:
            stage.last_error = "cancelled"
            raise
        except Exception as e:
            stage.failures += 1
            stage.last_error = str(e) or type(e).__name__
            log.exception("stage_failed", error=stage.last_error)
        else:
            stage.runs += 1
            stage.last_run = time.time()
            log.debug(
                "stage_completed",
                duration_ms=round((time.monotonic() - start) * 1000, 1),
            )
        finally:
            if work.done():
                self._release(stage)
            else:
                work.add_done_callback(lambda t: self._finish_late(stage, t))

    def _release(self, stage: Stage) -> None:
        stage.running = False
        stage.inflight = None

    def _finish_late(self, stage: Stage, work: asyncio.Future) -> None:
        """Done-callback for a handler that outlived its timeout."""
        error = None if work.cancelled() else work.exception()
        bind_stage(stage.name).info(
            "stage_finished_after_timeout",
            cancelled=work.cancelled(),
            error=str(error) if error is not None else None,
        )
        self._release(stage)

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {name: stage.status() for name, stage in self._stages.items()}
