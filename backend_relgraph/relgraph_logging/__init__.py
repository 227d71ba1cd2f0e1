"""
Structured logging for Backend Relgraph.

JSON logs with timestamp, event_type, and stage / relation context.
Use get_logger() in all modules for aggregation-friendly output.
"""

from backend_relgraph.relgraph_logging.logger import bind_stage, get_logger

__all__ = ["bind_stage", "get_logger"]
