"""Structured logging for complianceOS services.

Every module obtains its logger through get_logger(__name__) and passes
context as keyword arguments:

    logger = get_logger(__name__)
    logger.info("Audit run locked", audit_run_id=str(run.id), tenant_id=str(tenant.tenant_id))

configure_logging() is called once by create_app() and installs the shared
structlog processor chain (JSON in production, console renderer locally).
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Render JSON lines when True, colored console output otherwise.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given module name.

    Args:
        name: Usually the calling module's __name__.

    Returns:
        A bound logger accepting keyword context on every call.
    """
    return structlog.get_logger(name)


def bind_request_context(**kwargs: str) -> None:
    """Bind request-scoped values (correlation id, tenant id) to all log lines.

    Args:
        **kwargs: Context values merged into every subsequent log event.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    """Drop all request-scoped logging context."""
    structlog.contextvars.clear_contextvars()
