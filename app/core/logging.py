import logging
import sys

import structlog

from app.core.config import settings

QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def setup_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(message)s",
        stream=sys.stdout,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def bind_sync_context(run_id: int, trigger: str) -> None:
    """Attach the run to every log line emitted by the current task and its children."""
    structlog.contextvars.bind_contextvars(run_id=run_id, trigger=trigger)


def clear_sync_context() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "trigger")
