"""
Pipeline-only process entrypoint.

Builds settings, database, relations service and RPC client once, registers
the default jobs and runs the scheduler until SIGINT / SIGTERM. On shutdown
timers stop, in-flight stage runs drain (up to SHUTDOWN_DRAIN_SEC) and the
RPC client and engine are released.

Usage:
    python -m backend_relgraph.agent_worker.runtime
    python -m backend_relgraph.agent_worker.runtime --run-once
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from backend_relgraph.agent_worker.jobs import Pipeline, create_pipeline, register_default_jobs
from backend_relgraph.config import get_settings
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)


async def run_once(pipeline: Pipeline) -> int:
    """Run every registered stage once, in registration order. Returns the number of failed stages."""
    failed = 0
    for name in pipeline.scheduler.names():
        before = pipeline.scheduler.get(name).failures
        await pipeline.scheduler.run_once(name)
        if pipeline.scheduler.get(name).failures > before:
            failed += 1
    logger.info("runtime_run_once_done", stages=len(pipeline.scheduler.names()), failed=failed)
    return failed


async def run_forever(pipeline: Pipeline, stop_event: asyncio.Event | None = None) -> None:
    """Start all stages and block until stop_event is set (signals set it by default)."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows or not on the main thread
            pass

    pipeline.scheduler.start_all()
    logger.info("runtime_worker_started", stages=pipeline.scheduler.names())
    try:
        await stop_event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
    logger.info("runtime_shutdown_signal")
    drained = await pipeline.scheduler.stop_all(
        drain=True, drain_timeout_sec=pipeline.settings.shutdown_drain_sec
    )
    logger.info("runtime_worker_stopped", drained=drained)


async def _main(once: bool) -> int:
    pipeline = create_pipeline(get_settings())
    try:
        register_default_jobs(pipeline)
        if once:
            return 1 if await run_once(pipeline) else 0
        await run_forever(pipeline)
        return 0
    finally:
        await pipeline.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the relation graph pipeline (indexer, recalculation, cleanup).")
    parser.add_argument("--run-once", action="store_true", help="Run each stage once and exit")
    args = parser.parse_args(argv)
    try:
        return asyncio.run(_main(args.run_once))
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal")
        return 0
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
