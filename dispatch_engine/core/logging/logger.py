#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides structured logging with:
- Record ID correlation for per-record tracing
- Stage identifiers for execution flow
- JSON formatting for log aggregation
- Context processors for automatic field injection

Architectural Decision: structlog for production logging
- Context-aware logging with automatic field injection
- JSON output for log aggregation
- Async-safe record correlation through context variables
"""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TextIO

import structlog
from structlog.types import EventDict, WrappedLogger

from dispatch_engine.core.config.settings import get_settings

# Each record task runs in its own asyncio context, so the ID set inside a
# task never leaks into its siblings.
record_id_ctx: ContextVar[str | None] = ContextVar("record_id", default=None)


def add_record_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add the current record ID to the log event.

    STAGE-L.1: Record ID injection
    """
    record_id = record_id_ctx.get()
    if record_id and "record_id" not in event_dict:
        event_dict["record_id"] = record_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Upper-case the log level.

    STAGE-L.3: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def stringify_stage(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Stage enum members as their plain value."""
    stage = event_dict.get("stage")
    if stage is not None and hasattr(stage, "value"):
        event_dict["stage"] = stage.value
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None, stream: TextIO | None = None) -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
        stream: Output stream (stdout when None)
    """
    settings = get_settings()

    log_level = log_level or settings.logging.LOG_LEVEL
    log_format = log_format or settings.logging.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s", stream=stream or sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_record_id,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            stringify_stage,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("message", key="value", stage=Stage.ADMISSION)
    """
    return structlog.get_logger(name)


def set_record_id(record_id: str) -> None:
    """
    Set the record ID for the current task context.

    Called at the start of each record task so every log line it emits
    carries the record ID.
    """
    record_id_ctx.set(record_id)


def get_record_id() -> str | None:
    return record_id_ctx.get()


def clear_record_id() -> None:
    record_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Usage:
        log_stage(logger, "3.1", "Bucket empty", wait_seconds=0.12)
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)
