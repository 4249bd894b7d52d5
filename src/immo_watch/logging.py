"""Structured logging setup for the watcher and its CLI commands."""

import logging
import sys
from typing import TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_PACKAGE_PREFIX = "immo_watch."


def parse_level(name: str) -> int:
    """Translate a level name such as ``"debug"`` into a ``logging`` constant."""
    value = logging.getLevelName(name.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {name}")
    return value


def drop_empty_fields(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Remove keys whose value is None, e.g. an unset ``previous_id``."""
    return {key: value for key, value in event_dict.items() if value is not None}


def configure_logging(
    level: str = "info", *, json_output: bool = False, stream: TextIO | None = None
) -> None:
    """Configure structlog for a watcher process.

    Args:
        level: Level name from settings or the CLI (``"debug"``, ``"info"``, ...).
        json_output: Emit one JSON object per line instead of the console renderer.
        stream: Destination of rendered lines, stderr when omitted.

    Raises:
        ValueError: If ``level`` is not a known level name.
    """
    out = stream if stream is not None else sys.stderr
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        drop_empty_fields,
    ]
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=out.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(parse_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=out),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger that tags its lines with the emitting module, e.g. ``component=pipeline``."""
    component = name.removeprefix(_PACKAGE_PREFIX)
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name, component=component)
    return logger
