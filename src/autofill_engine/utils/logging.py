"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any, Dict, List, Optional

import structlog
from rich.logging import RichHandler

from autofill_engine.config import settings

# Libraries that log every request or protocol frame at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "urllib3")


def _processors(console: bool) -> List[Any]:
    renderer = structlog.dev.ConsoleRenderer() if console else structlog.processors.JSONRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="ISO"),
        renderer,
    ]


def configure_logging(level: Optional[str] = None, debug: Optional[bool] = None) -> None:
    """
    Configure structlog with rich output for the engine.

    Args:
        level: Log level name; defaults to ``settings.log_level``
        debug: Render human-readable lines instead of JSON; defaults to
            ``settings.debug``
    """
    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    console = settings.debug if debug is None else debug

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
        handlers=[RichHandler(rich_tracebacks=True, markup=True)],
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=_processors(console),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def session_context(session_id: str, **kwargs: Any) -> Dict[str, Any]:
    """Log context for a session, plus any job keys that are set."""
    context: Dict[str, Any] = {"session_id": session_id}
    context.update({k: v for k, v in kwargs.items() if v is not None})
    return context
