"""
Structured Logging with Structlog.

The API process and the dramatiq worker share one configuration; every entry
carries the component that emitted it so the two streams can be told apart.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from botmeter.config import settings

# Third-party loggers that are too chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "dramatiq.worker.WorkerThread")


class _ComponentTagger:
    def __init__(self, component: str) -> None:
        self.component = component

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", settings.service_name)
        event_dict.setdefault("component", self.component)
        return event_dict


def setup_logging(component: str = "api") -> None:
    """
    Configure structlog for this process.

    JSON entries look like:
    {
        "event": "credit_usage_recorded",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "botmeter.services.credits",
        "service": "botmeter",
        "component": "api",
        "organization_id": "org_123",
        ...
    }
    """
    level = logging.getLevelName(settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _ComponentTagger(component),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.log_format == "json":
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


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind keys to every entry logged inside the block.

        with log_context(schedule_id="sched_123", contact_id="c1"):
            logger.info("re_engagement_started")

    Keys bound by an outer block are restored on exit.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._previous: dict[str, Any] = {}

    def __enter__(self) -> None:
        current = structlog.contextvars.get_contextvars()
        self._previous = {k: current[k] for k in self.context if k in current}
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
        if self._previous:
            structlog.contextvars.bind_contextvars(**self._previous)
