"""
Structured logging for stagespine.

Manifesto:
    Pipeline runs are long, concurrent and interleaved. Plain text logs
    from many jobs at once are unreadable; every log line must say which
    job, stage and dependency it belongs to.

    - **Event names:** ``pipeline.stage_completed``, ``retry.scheduled``, ...
    - **Correlation:** ``job_id`` bound once per run via contextvars
    - **Two renderers:** console while developing, JSON when shipped

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, app_name="stagespine")
            │
            ▼
        processor chain:
          TimeStamper(iso) ─► merge_contextvars ─► level / logger name
            ─► stack + exc info ─► app name ─► JSONRenderer | ConsoleRenderer

    ``service`` in an event always names the dependency being called
    (openai, claude, ...). The engine's own name goes under ``app``.

Examples:
    >>> from stagespine.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> logger.info("pipeline.stage_completed", job_id="abc", stage="research")

Tags:
    logging, structlog, observability, stagespine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from stagespine.core.errors import ConfigError
from stagespine.core.settings import StageSpineSettings, get_settings

_APP_NAME = "stagespine"


def _add_app_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("app", _APP_NAME)
    return event_dict


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ConfigError(f"Unknown log level: {level!r}")
    return resolved


def _processors(json_format: bool, add_timestamp: bool) -> list[Processor]:
    chain: list[Processor] = []
    if add_timestamp:
        chain.append(structlog.processors.TimeStamper(fmt="iso"))
    chain += [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_app_name,
    ]
    if json_format:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return chain


def configure_logging(
    level: str | int = "INFO",
    json_format: bool | None = None,
    app_name: str = "stagespine",
    add_timestamp: bool = True,
) -> None:
    """Configure structlog on top of the stdlib ``logging`` module.

    Args:
        level: Level name (``DEBUG``, ``INFO``, ...) or number
        json_format: JSON lines when True, console when False, and JSON
            whenever stdout is not a terminal when None
        app_name: Value of the ``app`` key on every event
        add_timestamp: Prefix events with an ISO timestamp

    Raises:
        ConfigError: Unknown level name
    """
    global _APP_NAME
    numeric_level = _resolve_level(level)
    _APP_NAME = app_name
    if json_format is None:
        json_format = not sys.stdout.isatty()

    structlog.configure(
        processors=_processors(json_format, add_timestamp),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    logging.getLogger().setLevel(numeric_level)


def configure_logging_from_settings(settings: StageSpineSettings | None = None) -> None:
    """Configure logging from ``STAGESPINE_LOG_LEVEL`` / ``STAGESPINE_LOG_JSON``."""
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> Mapping[str, Token[Any]]:
    """Bind keys for every later event of the current task."""
    return structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind keys for the duration of a block, sync or async.

    Leaving the block restores whatever the keys were bound to before, so a
    nested context does not strip an outer ``job_id``.

    Example:
        async with LogContext(job_id="abc123", pipeline="content"):
            logger.info("pipeline.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: Mapping[str, Token[Any]] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = bind_context(**self._context)
        return self

    def __exit__(self, *exc: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, *exc: Any) -> None:
        self.__exit__(*exc)


__all__ = [
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
