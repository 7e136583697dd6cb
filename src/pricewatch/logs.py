from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_log_file: Optional[TextIO] = None


def level_from_name(name: str) -> int:
    try:
        return _LEVELS[name.lower()]
    except KeyError:
        raise ValueError(f"unknown log level {name!r}") from None


def configure_logging(level: str = "info", fmt: str = "console", file: Optional[str] = None) -> None:
    """
    structlog setup for the whole process: level filter, ISO timestamps,
    rendered tracebacks, console or JSON lines to stdout (or LOG_FILE).
    """
    global _log_file

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer renders exc_info itself
        processors.append(structlog.dev.ConsoleRenderer(colors=file is None and sys.stdout.isatty()))

    if _log_file is not None:
        _log_file.close()
        _log_file = None
    if file:
        _log_file = open(file, "a", encoding="utf-8")
    out = _log_file or sys.stdout

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_from_name(level)),
        logger_factory=structlog.PrintLoggerFactory(file=out),
        cache_logger_on_first_use=False,
    )
