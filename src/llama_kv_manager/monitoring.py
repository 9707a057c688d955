"""
Logging and operation tracing for llama-kv-manager.

Provides:
- Structured logging configuration (structlog)
- Timing of slot actions and restores
"""

from __future__ import annotations

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger()


# =============================================================================
# Operation Tracing
# =============================================================================


@asynccontextmanager
async def trace_operation(
    operation: str,
    log_result: bool = True,
    **labels: Any,
) -> AsyncIterator[dict[str, Any]]:
    """
    Context manager for timing async operations.

    Usage:
        async with trace_operation("kv_cache_save", model_id="m1") as trace:
            await do_work()
            trace["slot_id"] = 0
    """
    start_time = time.perf_counter()
    trace_data: dict[str, Any] = {}

    try:
        yield trace_data
    except Exception as e:
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.warning(
            f"Operation failed: {operation}",
            elapsed_ms=round(elapsed_ms, 2),
            error=str(e),
            error_type=type(e).__name__,
            **labels,
        )
        raise

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    trace_data["elapsed_ms"] = elapsed_ms
    if log_result:
        logger.info(
            f"Operation completed: {operation}",
            elapsed_ms=round(elapsed_ms, 2),
            **{**labels, **{k: v for k, v in trace_data.items() if k != "elapsed_ms"}},
        )


# =============================================================================
# Structured Logging Configuration
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    include_timestamp: bool = True,
) -> None:
    """
    Configure structured logging for the application.

    Logs go to stderr; stdout is reserved for the MCP stdio transport.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; otherwise, use console format
        include_timestamp: Include ISO timestamp in log entries
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if include_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
