import os
import sys
import logging
import logging.config

import structlog

from conductor import settings


def add_pid(
    logger: logging.Logger, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    event_dict["pid"] = os.getpid()
    return event_dict


# Standard library records (asyncio, etc.) go through the same chain so every
# diagnostic line on stderr looks alike.
foreign_pre_chain: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    add_pid,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def build_logging_config(level: str, formatter_name: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
                "foreign_pre_chain": foreign_pre_chain,
            },
            "json": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": structlog.processors.JSONRenderer(),
                "foreign_pre_chain": foreign_pre_chain,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
                "formatter": formatter_name,
            },
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {
            "asyncio": {"level": "WARNING"},
        },
    }


def configure_logging(verbose: bool = False) -> None:
    """Route structlog and stdlib logging to stderr.

    Component output never goes through here, it is written by the output
    multiplexer. Logging is for diagnosing conductor itself.
    """
    level = "DEBUG" if verbose else settings.LOG_LEVEL
    formatter_name = settings.LOGGING_FORMATTER_NAME
    if formatter_name not in {"default", "json"}:
        formatter_name = "default"

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *foreign_pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.config.dictConfig(build_logging_config(level, formatter_name))
