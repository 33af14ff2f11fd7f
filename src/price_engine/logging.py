"""Structured logging for the price engine, built on structlog.

Async context (e.g. the asset being resolved) is carried with
structlog.contextvars so every log line emitted while a resolution is in
flight is tagged with it, across awaits.
"""

import logging
import os

import structlog

# Third-party loggers that are chatty at INFO/DEBUG
_NOISY_LOGGERS = ("ccxt", "aiohttp", "stellar_sdk", "aiosqlite")


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog with console or JSON rendering.

    LOG_FORMAT selects the renderer: "console" (default) or "json".
    """
    log_format = os.environ.get("LOG_FORMAT", "console").lower()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

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
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)


def bind_asset(asset_key: str) -> None:
    """Tag subsequent log lines in this task with the asset being priced."""
    structlog.contextvars.bind_contextvars(asset=asset_key)


def unbind_asset() -> None:
    structlog.contextvars.unbind_contextvars("asset")
