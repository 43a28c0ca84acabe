"""
Logging configuration

Every record carries the id of the HTTP request (or CLI run) that produced it,
so a pipeline run can be followed across runner, connector and loader logs.
"""

import logging
import sys
from contextvars import ContextVar
from core.config import settings

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "apscheduler",
    "asyncio",
    "aiomysql",
    "firebird",
)


class RequestIdFilter(logging.Filter):
    """Stamp ``record.request_id`` from the current context"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


def setup_logging():
    """Configure application logging"""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(request_id)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler],
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {settings.LOG_LEVEL} level ({settings.ENVIRONMENT})")
