"""Structured logging setup."""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, TextIO

import structlog

from chatstream.config import get_config

_RENDERERS = {
    "console": structlog.dev.ConsoleRenderer,
    "json": structlog.processors.JSONRenderer,
}


def configure_logging(level: str | None = None, fmt: str | None = None, stream: TextIO | None = None) -> None:
    """Configure structlog for chatstream.

    ``level`` and ``fmt`` override ``config.logging``; unknown formats fall
    back to JSON lines.
    """
    settings = get_config().logging
    threshold = getattr(logging, (level or settings.level).upper(), logging.INFO)
    renderer = _RENDERERS.get((fmt or settings.format).lower(), structlog.processors.JSONRenderer)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def generation_context(message_id: str, conversation_id: str, **extra: Any) -> Iterator[None]:
    """Bind generation ids to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(
        message_id=message_id, conversation_id=conversation_id, **extra
    ):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Logger for ``name`` (usually ``__name__``)."""
    return structlog.get_logger(name) if name else structlog.get_logger()
