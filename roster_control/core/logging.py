"""
structlog setup for the roster-control process.

Development output is a coloured console stream, everything else is one JSON
object per line. Discord webhook tokens are masked before rendering because
webhook URLs end up in delivery-failure logs.
"""

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from roster_control.core.config import get_settings

_WEBHOOK_TOKEN = re.compile(r"(/api/webhooks/\d+/)[\w-]+")

# Chatty libraries kept at WARNING unless debug is on
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "asyncio")


def redact_webhook_tokens(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    for key, value in event_dict.items():
        if isinstance(value, str) and "/api/webhooks/" in value:
            event_dict[key] = _WEBHOOK_TOKEN.sub(r"\1***", value)
    return event_dict


def configure_logging(*, json_logs: bool | None = None) -> None:
    """Install the processor chain. ``json_logs`` overrides the environment default."""
    settings = get_settings()
    if json_logs is None:
        json_logs = settings.environment != "development"

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        redact_webhook_tokens,
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.log_level)
    quiet_level = logging.DEBUG if settings.debug else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


@contextmanager
def subject_context(external_id: str, **extra: Any) -> Iterator[None]:
    """Attach the Discord user id (and ``extra``) to every log line in the block."""
    with structlog.contextvars.bound_contextvars(external_id=external_id, **extra):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
