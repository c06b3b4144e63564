"""Structured logging for the agenda server.

Application code logs event names through structlog. Library loggers
(uvicorn, APScheduler, SQLAlchemy) still go through the standard library and
share the same level and stream.
"""

from __future__ import annotations

import logging
import sys

import structlog

from agenda import __version__
from agenda.config import get_settings

SERVICE_NAME = "agenda"

# The trigger tick runs every few seconds; APScheduler reports each run at INFO.
CHATTY_LIBRARY_LOGGERS = ("apscheduler.executors.default", "apscheduler.scheduler", "aiosqlite")


def add_service_context(env: str):
    """Processor stamping every event with the service, version and environment."""

    def processor(logger, method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("version", __version__)
        event_dict.setdefault("env", env)
        return event_dict

    return processor


def setup_logging() -> None:
    """Configure structlog and the standard library root logger."""
    settings = get_settings()
    log_level = getattr(logging, settings.agenda_log_level.upper(), logging.INFO)
    production = settings.agenda_env == "production"

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if production:
        processors += [
            add_service_context(settings.agenda_env),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stdout, level=log_level)
    quiet = max(log_level, logging.WARNING)
    for name in CHATTY_LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structured logger."""
    return structlog.get_logger(name)
