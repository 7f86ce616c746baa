"""
Structured logging for deploy-spine.

Configures structlog once per process and hands out loggers that emit
dotted event names with keyword fields::

    logger = get_logger(__name__)
    logger.info("service.started", service="backend", wave=2)

Output goes to stderr so ``--json`` results on stdout stay parseable. It is
JSON with ECS field names (``@timestamp``, ``log.level``, ``service.name``)
when stderr is not a TTY, and a colored console rendering otherwise.

Guardrails:
    - Log secret *names*, never values. Fields whose key looks like a
      credential (``password``, ``token``, ...) are masked as a backstop.
    - ``LogContext`` blocks nest: leaving an inner block restores the
      outer values instead of dropping them.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "deploy-spine"

REDACTED = "***"

# substrings of keys whose values are masked; "secret" alone is a name
SENSITIVE_KEYS = ("password", "passwd", "token", "secret_value", "credential")


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _redact_sensitive(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask values of credential-like fields."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS) and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def _ecs_field_names(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "deploy-spine",
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None to pick JSON
            when ``stream`` is not a TTY
        service: Value of ``service.name`` on every event
        stream: Output stream, stderr by default
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    stream = stream or sys.stderr
    if json_format is None:
        json_format = not stream.isatty()
    numeric_level = getattr(logging, level.upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
        _redact_sensitive,
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _ecs_field_names,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=stream.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        # tests reconfigure against fresh streams
        cache_logger_on_first_use=False,
    )

    # third-party stdlib loggers share the level and the stream
    logging.basicConfig(
        format="%(levelname)s %(name)s: %(message)s", stream=stream, level=numeric_level
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> Mapping[str, Token[Any]]:
    """Bind fields into every subsequent event of this context.

    Returns the tokens :func:`restore_context` needs to undo the binding.
    """
    return structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def restore_context(tokens: Mapping[str, Token[Any]]) -> None:
    """Restore the values bound before the matching :func:`bind_context`."""
    structlog.contextvars.reset_contextvars(**tokens)


class LogContext:
    """Scoped, nestable context binding.

    Example:
        with LogContext(run_id="abc123"):
            with LogContext(service="backend"):
                logger.info("service.started")   # run_id + service
            logger.info("wave.started")          # run_id only
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: Mapping[str, Token[Any]] = {}

    def __enter__(self) -> LogContext:
        self._tokens = bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        restore_context(self._tokens)


__all__ = [
    "REDACTED",
    "LogContext",
    "bind_context",
    "configure_logging",
    "get_logger",
    "restore_context",
    "unbind_context",
]
