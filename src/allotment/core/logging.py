"""
Structured logging for allotment.

One structlog configuration shared by the engine, the CLI and any embedding
application.  Engines log lifecycle transitions at ``info``, busy retries at
``debug`` and swallowed rollback failures at ``warning``.

Storage errors are logged as exception objects, not strings::

    logger.debug("store_busy_retry", operation="allocate", error=exc)

and :func:`describe_storage_errors` flattens them into ``<key>`` (message),
``<key>.type`` and ``<key>.code`` fields, where the code is the SQLite
result code or the PostgreSQL SQLSTATE.  Busy retries from different
engines can then be told apart (``5`` vs ``6``, ``55P03`` vs ``40P01``)
in aggregated logs.

Examples:
    Production (JSON for log aggregation):

    >>> from allotment.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True, service="allotment")
    >>> logger = get_logger(__name__)
    >>> logger.info("instance_available", instance_id="foo")

    Development (auto-detect: colored console if tty):

    >>> configure_logging(level="DEBUG")
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "allotment"

# Event keys that may carry a storage exception
ERROR_KEYS = ("error", "original_error")


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def describe_storage_errors(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace exception values under ``ERROR_KEYS`` with loggable fields."""
    for key in ERROR_KEYS:
        error = event_dict.get(key)
        if not isinstance(error, BaseException):
            continue
        event_dict[key] = str(error)
        event_dict[f"{key}.type"] = type(error).__name__
        code = getattr(error, "sqlite_errorcode", None) or getattr(error, "pgcode", None)
        if code is not None:
            event_dict[f"{key}.code"] = code
    return event_dict


def _ecs_field_names(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def _processors(json_format: bool, add_timestamp: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_service_metadata,
        describe_storage_errors,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors += [
            _ecs_field_names,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "allotment",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for JSON unless
            stderr is a terminal
        service: Value of the ``service.name`` field
        add_timestamp: Include an ISO timestamp
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    numeric_level = getattr(logging, level.upper())
    structlog.configure(
        processors=_processors(json_format, add_timestamp),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # structlog renders, the stdlib root handler writes to stderr
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context (e.g. ``engine="worker-1"``) to all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Scoped logging context, usable with ``with`` and ``async with``.

    Example:
        async with LogContext(command="allocate"):
            await allocator.allocate(job_id)
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args) -> None:
        unbind_context(*self._context.keys())

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *args) -> None:
        self.__exit__(*args)


__all__ = [
    "configure_logging",
    "describe_storage_errors",
    "get_logger",
    "bind_context",
    "unbind_context",
    "LogContext",
]
