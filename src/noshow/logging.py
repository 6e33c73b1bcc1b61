"""Structured logging configuration with correlation_id."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

__all__ = [
    "configure_logging",
    "get_logger",
    "correlation_id_var",
    "evaluation_context",
]

# One id per evaluation request, shared by every log line it produces
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


@contextmanager
def evaluation_context(appointment_id: str, **keys: Any) -> Iterator[str]:
    """Scope one appointment evaluation.

    Sets a fresh correlation id and binds ``appointment_id`` (plus any extra
    keys, typically ``rule_id``) so every structlog line emitted inside the
    block carries them. Both are restored on exit.
    """
    token = correlation_id_var.set(str(uuid.uuid4()))
    try:
        with structlog.contextvars.bound_contextvars(appointment_id=appointment_id, **keys):
            yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    cid = correlation_id_var.get("")
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def configure_logging(*, json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        json_output: True for JSON (production), False for console (dev).
        level: Log level string.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level.upper(), format="%(levelname)s %(name)s: %(message)s")


def get_logger(**kwargs: Any) -> structlog.BoundLogger:
    """Get a bound logger with optional initial context."""
    return structlog.get_logger(**kwargs)  # type: ignore[no-any-return]
