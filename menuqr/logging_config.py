"""structlog configuration module."""

import logging
import sys

import structlog

SERVICE_NAME = "menuqr-core"

# Chatty transport loggers pulled in by the Supabase client
_NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "postgrest")


def _add_service(_logger, _method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(debug: bool = False) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output for log aggregation, tagged with the
    service name so lines can be told apart in a shared sink.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
    """
    level = logging.DEBUG if debug else logging.INFO

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, tenant_id (middleware, auth)
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        shared_processors.append(_add_service)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
