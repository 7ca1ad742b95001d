"""Logging setup for the API process and the sweeper CLI."""

import logging
import sys

import structlog

# Client libraries that log every outbound request at INFO; in production
# only their warnings reach the billing log.
CHATTY_LOGGERS = ("httpx", "httpcore", "stripe")


def setup_logging(debug: bool = False) -> None:
    """Console output when `debug` is set, one JSON object per line otherwise.

    Every event carries the request context bound by the middleware
    (request_id, path) plus account_id once auth has run.
    """
    level = logging.DEBUG if debug else logging.INFO
    renderer = (
        structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn access lines and SDK warnings share stdout with structlog
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(level if debug else logging.WARNING)
