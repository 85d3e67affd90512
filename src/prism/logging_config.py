"""Structured logging configuration with structlog.

Worker processes bind the running arq job's id and attempt number into
structlog's contextvars, so every event logged while a job runs carries both.
"""

import logging
from typing import Any

import structlog

from prism.config import Settings

SECRET_KEYS = frozenset({"credential", "token", "access_token", "authorization", "api_key", "password"})
REDACTED = "***"


def redact_secrets(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask credential-like fields so a decrypted token never reaches a log sink."""
    for key in event_dict.keys() & SECRET_KEYS:
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON or console output."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    # httpx logs every request URL at INFO; adapters log their own outcomes
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def bind_job_context(ctx: dict) -> None:  # type: ignore[type-arg]
    """arq ``on_job_start`` hook."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(job_id=ctx.get("job_id"), job_try=ctx.get("job_try"))


async def clear_job_context(ctx: dict) -> None:  # type: ignore[type-arg]
    """arq ``on_job_end`` hook."""
    structlog.contextvars.clear_contextvars()
