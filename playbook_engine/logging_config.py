"""
Logging Configuration

Structured logging using structlog for the playbook engine. Driver tasks
bind execution identifiers through contextvars so every line logged while
advancing an execution carries them.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("apscheduler",)


class AppContext:
    """Processor stamping the application name and environment on each event."""

    def __init__(self, app_name: str, environment: Optional[str] = None):
        self.app_name = app_name
        self.environment = environment

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict["app"] = self.app_name
        if self.environment:
            event_dict.setdefault("environment", self.environment)
        return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    app_name: str = "playbook-engine",
    environment: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the engine

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or text)
        app_name: Value of the "app" key on every event
        environment: Deployment environment, added when set
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        AppContext(app_name, environment),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_execution_context(execution_id: str, playbook_id: str, **extra: Any) -> None:
    """
    Bind execution identifiers to every log line of the current task.

    Driver tasks call this once on entry; asyncio copies the context per
    task, so concurrent executions never see each other's bindings.
    """
    structlog.contextvars.bind_contextvars(
        execution_id=execution_id,
        playbook_id=playbook_id,
        **extra,
    )


def get_logger(name: str = __name__) -> Any:
    """Get a structlog logger, usually with `__name__`."""
    return structlog.get_logger(name)
