"""Logging configuration module."""

from collections.abc import Iterable
from logging import (
    CRITICAL,
    DEBUG,
    ERROR,
    INFO,
    WARNING,
    Handler,
    StreamHandler,
    getLogger,
)
from typing import cast

import structlog
from structlog import contextvars, dev, processors, stdlib
from structlog.stdlib import BoundLogger
from structlog.types import EventDict, Processor, WrappedLogger

LOG_LEVELS: dict[str, int] = {
    "debug": DEBUG,
    "info": INFO,
    "warning": WARNING,
    "error": ERROR,
    "critical": CRITICAL,
}

# Chatty per-request loggers from the HTTP stack
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def service_context(service: str, version: str) -> Processor:
    """Stamp every entry with the emitting service and its version."""

    def processor(
        logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict.setdefault("service", service)
        event_dict.setdefault("version", version)
        return event_dict

    return processor


def configure_logging(
    testing: bool = False,
    level: str = "info",
    json_logs: bool = True,
    service: str = "podcaster",
    version: str | None = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> None:
    """Configure structured logging for the application.

    Args:
        testing: Whether the application is running in test mode
        level: Log level name (debug, info, warning, error, critical)
        json_logs: Render JSON instead of key/value pairs outside tests
        service: Service name added to every entry
        version: Release added to every entry when given
        quiet: Third-party loggers held at WARNING unless ``level`` is debug
    """
    log_level = LOG_LEVELS.get(level.lower(), INFO)
    use_json = json_logs and not testing

    shared: list[Processor] = [
        contextvars.merge_contextvars,
        stdlib.add_logger_name,
        stdlib.add_log_level,
        stdlib.PositionalArgumentsFormatter(),
        processors.TimeStamper(fmt="iso", utc=True),
        processors.dict_tracebacks,
    ]
    if version is not None:
        shared.append(service_context(service, version))

    structlog.configure(
        processors=[
            stdlib.filter_by_level,
            *shared,
            processors.format_exc_info,
            processors.JSONRenderer() if use_json else processors.KeyValueRenderer(),
        ],
        context_class=dict,
        logger_factory=stdlib.LoggerFactory(),
        wrapper_class=stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler: Handler = StreamHandler()
    handler.setLevel(log_level)
    handler.setFormatter(
        stdlib.ProcessorFormatter(
            processor=processors.JSONRenderer() if use_json else dev.ConsoleRenderer(),
            foreign_pre_chain=shared,
        )
    )

    # Replace handlers so repeated configuration never duplicates output
    for name in (None, "podcaster"):
        target = getLogger(name)
        target.setLevel(log_level)
        target.handlers = [handler]

    for name in quiet:
        getLogger(name).setLevel(DEBUG if log_level == DEBUG else max(log_level, WARNING))


def get_logger(name: str | None = None) -> BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Optional logger name, usually the calling module's ``__name__``

    Returns:
        A structured logger instance.
    """
    if name is None:
        return cast(BoundLogger, structlog.get_logger())
    return cast(BoundLogger, structlog.get_logger(name))
