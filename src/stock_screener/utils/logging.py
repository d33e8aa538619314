"""Logging configuration using structlog."""

import logging
import sys

import structlog


def setup_logging(level: str = "INFO", colors: bool = True) -> None:
    """
    Configure structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        colors: Render coloured console output
    """
    # Set up standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_run_context(**values) -> None:
    """Attach context (run_id, screen_id, ...) to every log line in this thread/task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    """Drop context bound by bind_run_context."""
    structlog.contextvars.clear_contextvars()
