"""structlog setup shared by the API and the verifier CLI."""

import logging
import sys
from typing import TextIO, cast

import structlog
from structlog.types import Processor

from audit_chain.core.config import Settings, get_settings


def configure_logging(
    stream: TextIO | None = None, *, settings: Settings | None = None
) -> None:
    """
    Route structlog and stdlib logging through one renderer.

    The development environment gets console output; every other environment
    emits one JSON object per line. Command-line tools pass ``sys.stderr``
    so reports on stdout stay clean.
    """
    settings = settings or get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "development":
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=stream is None)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib records (uvicorn, sqlalchemy) share the same stream and level.
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=getattr(logging, settings.log_level),
        force=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
