"""structlog configuration shared by every sync engine component.

Event names follow `{domain}.{component}.{action_state}`, for example
`reconciler.listing.sold` or `subscription.stream.failed`.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Event key (tx_hash:log_index) being reconciled, or a caller-supplied request ID
_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Library loggers that are noisy below WARNING
_QUIET_LOGGERS = ("asyncio", "aiohttp.access", "aiohttp.client", "web3")


def _inject_correlation_id(
    _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
    correlation_id = _correlation_id.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog output to stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines when True, colored console lines otherwise
    """
    level = getattr(logging, log_level.upper())

    logging.basicConfig(format="%(message)s", level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer: Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _inject_correlation_id,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str:
    """Correlation ID of the current task, or an empty string."""
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[None]:
    """Tag every log line inside the block with `correlation_id`.

    The previous value is restored on exit, so nested scopes and concurrent
    tasks each keep their own ID.
    """
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)
