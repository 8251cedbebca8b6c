"""
Structured logging for the order service.

structlog is configured once at startup. Every log line carries the
correlation fields known for the current request: the request id, the
authenticated principal and, inside order endpoints, the order id. They live
in context variables so service and repository code never pass them around.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Optional
from uuid import uuid4

import structlog
from structlog.types import EventDict, Processor

from src.core.config import get_settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
principal_id_ctx: ContextVar[Optional[str]] = ContextVar("principal_id", default=None)
order_id_ctx: ContextVar[Optional[str]] = ContextVar("order_id", default=None)

_CORRELATION_FIELDS: tuple[tuple[str, ContextVar], ...] = (
    ("request_id", request_id_ctx),
    ("principal_id", principal_id_ctx),
    ("order_id", order_id_ctx),
)


def add_correlation_ids(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Copy correlation ids from context into the event.

    Values passed explicitly to the log call win over the context.
    """
    for key, var in _CORRELATION_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def normalize_log_level(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    if method_name == "warn":
        method_name = "warning"
    event_dict["level"] = method_name.upper()
    return event_dict


def configure_logging() -> None:
    """
    Configure structlog and the standard library root logger.

    Development gets the colored console renderer, every other environment
    one JSON object per line.
    """
    settings = get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        normalize_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_ids,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    # third-party loggers only surface problems
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "celery", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request id for the current request, generating one if the
    client did not send ``X-Request-ID``.
    """
    request_id = request_id or str(uuid4())
    request_id_ctx.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_ctx.get()


def set_principal_id(principal_id: Optional[str]) -> None:
    principal_id_ctx.set(principal_id)


def bind_order_id(order_id: Any) -> None:
    """Attach the order being worked on to every following log line."""
    order_id_ctx.set(str(order_id) if order_id is not None else None)


def clear_context() -> None:
    """Reset correlation ids at the end of a request."""
    request_id_ctx.set("")
    principal_id_ctx.set(None)
    order_id_ctx.set(None)


class PerformanceLogger:
    """
    Context manager timing a block of work.

    Blocks slower than ``slow_threshold_ms`` are logged at warning, failures
    at error with the exception type.
    """

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        slow_threshold_ms: Optional[float] = None,
        **context: Any,
    ):
        self.logger = logger
        self.operation = operation
        self.slow_threshold_ms = (
            slow_threshold_ms
            if slow_threshold_ms is not None
            else get_settings().slow_request_threshold_ms
        )
        self.context = context
        self.start_time: Optional[float] = None

    @property
    def elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        return round((time.perf_counter() - self.start_time) * 1000, 2)

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        duration_ms = self.elapsed_ms

        if exc_type is not None:
            self.logger.error(
                "Operation failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error_type=exc_type.__name__,
                **self.context,
            )
            return

        if duration_ms > self.slow_threshold_ms:
            self.logger.warning(
                "Slow operation",
                operation=self.operation,
                duration_ms=duration_ms,
                threshold_ms=self.slow_threshold_ms,
                **self.context,
            )
        else:
            self.logger.debug(
                "Operation completed",
                operation=self.operation,
                duration_ms=duration_ms,
                **self.context,
            )


def log_performance(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    **context: Any,
) -> PerformanceLogger:
    """
    Time a block of work.

    Example:
        >>> with log_performance(logger, "request_processing", path=path):
        ...     response = await call_next(request)
    """
    return PerformanceLogger(logger, operation, **context)
