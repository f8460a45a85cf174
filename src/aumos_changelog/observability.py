"""Structured logging for aumos-changelog.

All modules obtain loggers via ``get_logger(__name__)`` and log event-style
messages with keyword context. Snapshot values are never passed to the
logger, only entity names, row identities and field names.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
        json_output: Render JSON lines when true, coloured console output otherwise.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the module name.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        A bound logger accepting keyword context on every call.
    """
    return structlog.get_logger(name)
