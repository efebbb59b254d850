import logging
from typing import Optional

import structlog

from allocator.config import settings

# Library loggers that are far too chatty at INFO for ledger traffic.
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.pool")


def setup_logging(level: Optional[str] = None):
    """Configure structlog and route stdlib loggers (uvicorn, sqlalchemy) to stdout."""
    level_no = getattr(logging, (level or settings.LOG_LEVEL).upper())

    logging.basicConfig(format="%(levelname)s %(name)s %(message)s", level=level_no)
    logging.getLogger("sqlalchemy.engine").setLevel(
        getattr(logging, settings.SQL_LOG_LEVEL.upper())
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level_no, logging.WARNING))

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.ENVIRONMENT == "development"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
