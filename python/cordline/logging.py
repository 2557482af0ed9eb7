"""structlog setup shared by the API, the Celery worker and scripts.

Output is one JSON object per line on stdout. stdlib loggers (uvicorn,
celery, sqlalchemy) are routed through the same processor chain, so every
line has the same shape.

Correlation fields live in a context-local mapping and are stamped onto
every entry logged while they are bound:

    request_id, path, method, user_id   bound by the HTTP middleware
    request_id, task_name, task_id      bound by configure_task_logging()

Usage:
    logger = get_logger(__name__)
    logger.info("message_sent", conversation_id=str(cid), recipients=2)
"""

import logging
import sys
from collections.abc import Mapping
from contextvars import ContextVar
from types import MappingProxyType
from typing import Any

import structlog

_EMPTY: Mapping[str, str] = MappingProxyType({})
_log_context: ContextVar[Mapping[str, str]] = ContextVar("cordline_log_context", default=_EMPTY)

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def bind_log_context(**values: Any) -> None:
    """Bind correlation fields for the current context; None values are skipped."""
    merged = dict(_log_context.get())
    merged.update({key: str(value) for key, value in values.items() if value is not None})
    _log_context.set(MappingProxyType(merged))


def clear_log_context() -> None:
    _log_context.set(_EMPTY)


def get_request_id() -> str | None:
    return _log_context.get().get("request_id")


def add_log_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor; explicit keyword arguments win over bound values."""
    for key, value in _log_context.get().items():
        event_dict.setdefault(key, value)
    return event_dict


def configure_logging(json_format: bool = True) -> None:
    """Install the structlog pipeline and route the stdlib root logger through it."""
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_log_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    renderer = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def configure_task_logging(
    request_id: str | None = None,
    task_name: str | None = None,
    task_id: str | None = None,
) -> None:
    """Start a fresh log context for a Celery task run.

    request_id is the id of the HTTP request that enqueued the task, if any;
    beat-scheduled runs have none.
    """
    clear_log_context()
    bind_log_context(request_id=request_id, task_name=task_name, task_id=task_id)
