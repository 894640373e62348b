"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

LOG_FORMATS = ("console", "json")


def setup_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Configure structlog on stderr.

    ``console`` renders for a terminal; ``json`` emits one object per line
    for log shippers. Context bound with :func:`bind_session` is merged into
    every event either way.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if fmt == "json":
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_session(session_id: str):
    """Bind *session_id* to every log event emitted inside the returned context."""
    return structlog.contextvars.bound_contextvars(session_id=session_id)
