"""Structured logging configuration using *structlog*."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from therapy_affect.models import Channel


def setup_logging(level: str = "INFO", *, json: bool | None = None) -> None:
    """Configure *structlog* processors for the detection runtime.

    Call once at application startup.  ``json`` forces the renderer; by
    default a console renderer is used on a TTY and JSON lines otherwise.
    """
    if json is None:
        json = not sys.stderr.isatty()
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def channel_logger(name: str, channel: Channel) -> Any:
    """Return a module logger with the detection channel pre-bound."""
    return structlog.get_logger(name).bind(channel=channel.value)
