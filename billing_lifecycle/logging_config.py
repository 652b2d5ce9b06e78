"""Structured logging configuration using structlog.

Every log line carries the application name and whatever lifecycle context
is bound at the time: the subscription being processed, the trigger that
started the work (scheduled event, payment, order status change) and the
virtual time of a clock tick. Enum values such as statuses render as their
plain string value.
"""

import logging
import os
import sys
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "billing-lifecycle-engine"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-wide context to log events."""
    event_dict["app"] = APP_NAME
    return event_dict


def render_enum_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Log statuses, date types and periods by value (``on-hold``, not ``SubscriptionStatus.ON_HOLD``)."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def drop_debug_in_production(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop DEBUG logs if not in debug mode."""
    if method_name == "debug" and not is_debug_mode():
        raise structlog.DropEvent
    return event_dict


def is_debug_mode() -> bool:
    """Check if debug mode is enabled via LOG_LEVEL environment variable."""
    return os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog for the engine.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON; if False, use colored console output
        include_timestamp: Include ISO8601 wall clock timestamps in logs
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        render_enum_values,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))

    if numeric_level > logging.DEBUG:
        processors.append(drop_debug_in_production)

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=True, exception_formatter=structlog.dev.plain_traceback)
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__ from calling module)
    """
    return structlog.get_logger(name)


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """Bind context to every log line written inside the block.

    Values bound by an enclosing block are restored on exit, so nested
    blocks (a renewal inside a scheduled run) don't lose the outer context.

    Example:
        with log_context(virtual_time=1706745600):
            engine.process_scheduled_events(1706745600)
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield


@contextmanager
def subscription_log_context(subscription_id: int, trigger: str, **context: Any) -> Iterator[None]:
    """Bind the subscription being processed and what triggered the processing.

    Example:
        with subscription_log_context(1042, "payment_failed", order_id=1043):
            ...
    """
    with log_context(subscription_id=subscription_id, trigger=trigger, **context):
        yield
