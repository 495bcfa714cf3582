"""
MemCore — Structured Logging
==============================
structlog over stdlib logging.  Engine events use dotted names
(``memory.ingest.complete``, ``retrieval.branch.degraded``) and carry the
correlation ID bound by ``memcore.core.tracing`` for the call in flight.

Usage:
    from memcore.core.logging import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
    logger.info("memory.ingest.start", event_id="abc-123")
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from memcore.core.config import Settings, get_settings

# Third-party loggers held at WARNING regardless of the configured level.
_QUIET_LOGGERS = ("chromadb", "jieba", "httpx", "openai", "aiosqlite")


def _service_context(settings: Settings) -> Processor:
    app = settings.app_name
    environment = settings.environment.value

    def add_service_context(
        logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict.setdefault("app", app)
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_service_context


def _add_correlation_id(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Inject the bound correlation_id unless the caller passed one."""
    from memcore.core.tracing import correlation_id_ctx

    cid = correlation_id_ctx.get(None)
    if cid is not None:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


class _MemcoreHandler(logging.StreamHandler):
    """Marker type so reconfiguration replaces only our own handler."""


def configure_logging(
    settings: Settings | None = None, stream: TextIO | None = None
) -> None:
    """
    Configure structlog and the root stdlib logger.

    Safe to call more than once: the previous memcore handler is replaced
    and handlers installed by the host application are left alone.
    """
    settings = settings or get_settings()
    as_json = settings.log_format == "json"

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_context(settings),
        _add_correlation_id,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: Processor
    if as_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *([structlog.processors.format_exc_info] if as_json else []),
            renderer,
        ],
    )

    handler = _MemcoreHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in [h for h in root_logger.handlers if isinstance(h, _MemcoreHandler)]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.db_echo_sql else logging.WARNING
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
