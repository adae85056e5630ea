# /flowbot/utils/logging.py

import logging
import sys
from typing import List

import structlog
from flowbot.config.settings import settings

# Structured logging for the API, the executor and the scheduler process.
# Engine code logs events through structlog; services log through stdlib
# loggers, which are rendered by the same ProcessorFormatter.

NOISY_LOGGERS = ("uvicorn.access", "httpx", "apscheduler.executors.default")

_configured = False


def _processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(environment: str):
    if environment in ("development", "test"):
        return structlog.dev.ConsoleRenderer(colors=environment == "development")
    return structlog.processors.JSONRenderer()


def setup_logging(level: str | None = None) -> None:
    """Idempotent; the API lifespan and the scheduler both call it."""
    global _configured
    if _configured:
        return

    pre_chain = _processors()
    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=_renderer(settings.environment),
        foreign_pre_chain=pre_chain,
    ))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel((level or settings.log_level).upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True
