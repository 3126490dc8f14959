"""Structured logging utilities for PromptCalc.

This module provides async-safe structured logging using structlog.
Every event emitted inside a generation request carries the trace_id set
by the service entry point, so classifier, generator and scanner logs can
be correlated without passing ids through every call.
"""

import logging
import os
import sys
import time
from contextvars import ContextVar
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for per-request trace correlation
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

#: Stages slower than this are logged at warning level by PerformanceLogger.
DEFAULT_SLOW_THRESHOLD_MS: float = 5000.0


def add_trace_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add trace_id to log context if available."""
    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add epoch timestamp to log entries."""
    event_dict["timestamp"] = time.time()
    return event_dict


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
                   Falls back to ``LOG_LEVEL`` env var, then INFO.
        json_output: If True, output JSON format. If False, use console format.
                     Falls back to ``JSON_LOGS`` env var (default true).
    """
    if log_level is None:
        log_level = os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("JSON_LOGS", "true").strip().lower() != "false"

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_trace_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "promptcalc") -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class PerformanceLogger:
    """Context manager timing one pipeline stage (gateway call, scan, embed)."""

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        slow_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.slow_threshold_ms = slow_threshold_ms
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end_time = time.perf_counter()
        duration_ms = (self.end_time - self.start_time) * 1000

        if exc_type is not None:
            self.logger.error(
                f"{self.operation} failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error_type=exc_type.__name__,
            )
        else:
            log_method = (
                self.logger.warning
                if duration_ms > self.slow_threshold_ms
                else self.logger.debug
            )
            log_method(
                f"{self.operation} completed",
                operation=self.operation,
                duration_ms=duration_ms,
            )

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.end_time == 0:
            return (time.perf_counter() - self.start_time) * 1000
        return (self.end_time - self.start_time) * 1000


def set_trace_id(trace_id: str) -> None:
    """Set trace ID in context for all subsequent logs."""
    trace_id_var.set(trace_id)


def clear_trace_id() -> None:
    """Clear trace ID from context."""
    trace_id_var.set(None)


configure_logging()
