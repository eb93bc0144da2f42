import logging
import sys

import structlog

# Chatty client libraries only surface warnings
QUIET_LOGGERS = ("httpx", "httpcore", "google_genai", "sqlalchemy.engine")


def setup_logging(level: str = "INFO"):
    """JSON logs on stdout; `job_context` values are merged into every event."""
    numeric_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str = "scribeline"):
    return structlog.get_logger(name)


def job_context(**values):
    """Bind values (job id, meeting id, attempt) to every log line in the current task."""
    return structlog.contextvars.bound_contextvars(**values)
