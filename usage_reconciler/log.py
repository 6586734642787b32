"""
Logging setup.

Configures structlog for console output on stderr, keeping stdout for
command results.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "info") -> None:
    """Configure structlog with a console renderer at the given level.

    Args:
        level: One of debug, info, warning, error
    """
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
