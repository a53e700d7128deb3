import logging

import structlog

import config


def configure_logging(level: str = config.LOG_LEVEL, json: bool = config.LOG_JSON):
    """Configure structlog once for the whole process.

    Key/value output by default, one JSON object per line when LOG_JSON=1.
    """
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        cache_logger_on_first_use=True,
    )
