"""Pipeline scheduler: single-flight stages on independent timers."""

from backend_relgraph.scheduler.engine import Scheduler, Stage

__all__ = ["Scheduler", "Stage"]
