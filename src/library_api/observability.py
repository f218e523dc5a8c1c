"""Logfire observability for the Library Circulation API."""

import functools
import inspect
import logging
import sys
from collections.abc import Callable
from datetime import datetime

import logfire

from .config import ServerConfig, get_config

logger = logging.getLogger(__name__)

_initialized = False

# Library Business Metrics
circulation_events = logfire.metric_counter(
    "library.circulation.events", description="Borrow and return events by outcome"
)


def configure_logging(config: ServerConfig | None = None) -> None:
    """Send log records to stderr at the configured level."""
    config = config or get_config()
    level = logging.DEBUG if config.is_development else getattr(logging, config.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # SQL echo is too noisy outside debug sessions
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if config.debug else logging.WARNING
    )


def initialize_observability(config: ServerConfig | None = None) -> None:
    """Configure Logfire once per process.

    Spans are only exported when a Logfire token is configured.
    """
    global _initialized  # noqa: PLW0603
    if _initialized:
        return

    config = config or get_config()
    logfire.configure(
        token=config.logfire_token,
        service_name=config.app_name,
        service_version=config.app_version,
        environment=config.environment,
        send_to_logfire="if-token-present",
        console=False,
    )
    _initialized = True
    logger.debug("Observability initialized (environment=%s)", config.environment)


def record_circulation_event(event_type: str, outcome: str) -> None:
    circulation_events.add(1, {"event_type": event_type, "outcome": outcome})


def trace_ledger(operation: str):
    """Decorator to trace a borrowing ledger operation."""

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with logfire.span(f"ledger.{operation}", operation=operation) as span:
                start_time = datetime.now()
                bound = signature.bind_partial(*args, **kwargs)
                _add_attributes(span, "input", bound.arguments)

                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    span.set_attribute("ledger.success", False)
                    span.set_attribute("ledger.error", type(e).__name__)
                    record_circulation_event(operation, type(e).__name__)
                    raise

                span.set_attribute("ledger.success", True)
                span.set_attribute(
                    "ledger.duration_ms", (datetime.now() - start_time).total_seconds() * 1000
                )
                record_circulation_event(operation, "success")
                return result

        return wrapper

    return decorator


def _add_attributes(span, prefix: str, data: dict):
    for key, value in data.items():
        if isinstance(value, str | int | float | bool):
            span.set_attribute(f"{prefix}.{key}", value)
