"""
structlog setup shared by the API, the scheduler and the indexer stages.

Every record is one line with an ISO-8601 UTC timestamp, the level, the
logger name and an event_type (the first positional argument, snake_case).
Context goes in keyword arguments: stage, relation_id, block range, etc.

LOG_FORMAT=json (default) renders JSON lines; anything else renders the
console format. LOG_LEVEL picks the threshold. Configured on first import.
This module imports nothing from backend_relgraph so anything may import it.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()


def _level_value(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)


def _utc_timestamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return event_dict


def _event_type(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog calls the positional message 'event'; we ship it as event_type (and message)."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "event_type" in event_dict:
        event_dict.setdefault("message", str(event_dict["event_type"]))
    return event_dict


def configure_structlog(log_format: str | None = None, level: int | str | None = None) -> None:
    """(Re)configure structlog. Arguments override LOG_FORMAT / LOG_LEVEL."""
    fmt = (log_format or LOG_FORMAT).strip().lower()
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _utc_timestamp,
            _event_type,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_value(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Module logger with its name bound as `logger`:

        logger = get_logger(__name__)
        logger.info("relation_upserted", relation_id=7, interaction_count=3)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_stage(stage: str) -> structlog.BoundLogger:
    """Scheduler logger with the pipeline stage name bound to every call."""
    return get_logger("backend_relgraph.scheduler").bind(stage=stage)
