"""Structured logging configuration for forumbridge."""

import logging
import sys
from typing import Any, TextIO

import structlog

# Chatty third-party loggers that report every HTTP request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        log_level: Minimum level name, e.g. ``"INFO"``.
        json_output: Render JSON lines (service) or aligned console output (CLI).
        stream: Destination stream, stdout by default.
    """
    level = getattr(logging, log_level.upper())
    stream = stream or sys.stdout
    logging.basicConfig(format="%(message)s", stream=stream, level=level, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=stream.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a structured logger bound to ``name``."""
    return structlog.get_logger(name)
