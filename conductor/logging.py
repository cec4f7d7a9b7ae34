"""Logging configuration for Conductor.

Logs always go to stderr so that ``conductor run --json`` can keep stdout
for the result document.
"""

import logging
import sys
from typing import IO, TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from conductor.config import LoggingConfig


def _renderer(fmt: str, stream: IO[str]) -> Any:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    # No ANSI colours when stderr is redirected to a file.
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def configure_logging(config: "LoggingConfig | None" = None, stream: IO[str] | None = None) -> None:
    """Configure structured logging for Conductor.

    Args:
        config: Level and renderer; INFO with the console renderer when omitted
        stream: Destination, stderr by default
    """
    out = stream or sys.stderr
    level_name = config.level if config else "INFO"
    log_level = getattr(logging, level_name.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(config.format if config else "console", out),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=out),
        # Module-level loggers must pick up a later reconfiguration.
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Logger bound to ``component=name`` (usually ``__name__``)."""
    if name:
        return structlog.get_logger(name, component=name.rsplit(".", 1)[-1])
    return structlog.get_logger()
