"""Structured logging configuration using *structlog*.

Every module logs dotted event names (``connection.state_changed``,
``buffer.drained``, ``storage.error``, ``session.stopped``) with key-value
context.  Output goes to stderr so ``mirrormind decode`` and the session
summary printed by ``mirrormind monitor`` stay clean on stdout.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(level: str = "INFO") -> None:
    """Configure *structlog* processors for the ingestion pipeline.

    Call once at application startup, before the first BLE or storage
    operation.  *level* is one of the ``MIRRORMIND_LOG_LEVEL`` values.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stderr.isatty()
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
