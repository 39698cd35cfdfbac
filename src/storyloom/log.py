"""Structured logging setup (structlog on top of stdlib logging)."""

import logging
import os
import sys

import structlog

DEFAULT_LEVEL = "WARNING"


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog once for the process.

    Level and format fall back to STORYLOOM_LOG_LEVEL / STORYLOOM_LOG_FORMAT.
    Format is "json" or "console".
    """
    level = (level or os.environ.get("STORYLOOM_LOG_LEVEL") or DEFAULT_LEVEL).upper()
    fmt = fmt or os.environ.get("STORYLOOM_LOG_FORMAT", "console")

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level, logging.WARNING),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
