"""
structlog configuration.

Console output in debug mode, one JSON object per line otherwise.
Context bound with structlog.contextvars (e.g. correlation_id) is
merged into every event logged inside that context.
"""
from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(debug: bool = False, json_logs: bool = False, stream=None) -> None:
    level = logging.DEBUG if debug else logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=False,
    )
