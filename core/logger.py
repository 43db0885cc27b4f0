"""Structured logging — JSON outside dev, coloured console in dev."""

from __future__ import annotations

import logging
import sys

import structlog

from config.settings import settings

# Chatty transport loggers pulled down to WARNING unless we run at DEBUG.
_NOISY_LOGGERS = ("httpx", "httpcore", "web3.providers", "web3.manager", "asyncio")

_configured = False


def setup_logging(level: str | None = None, force: bool = False) -> None:
    """Configure structlog processors and route stdlib logging through them.

    Safe to call repeatedly; only the first call (or ``force=True``)
    touches the root logger.
    """
    global _configured
    if _configured and not force:
        return

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.APP_ENV == "dev":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    effective = (level or settings.LOG_LEVEL).upper()
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(effective)

    if effective != "DEBUG":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound logger for the given module name."""
    setup_logging()
    return structlog.get_logger(name)
