import logging
import sys

import structlog

from crm_bridge.core.config import Settings

# Upload/download URLs carry api tokens in the query string.
QUIET_LOGGERS = ("httpx", "httpcore")


def setup_logging(settings: Settings) -> None:
    level = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=level,
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
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(env=settings.APP_ENV)
