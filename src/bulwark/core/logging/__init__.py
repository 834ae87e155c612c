"""
Logging configuration module for structured logging.

This module configures Bulwark's logging using structlog. Decisions, state
transitions and degraded-mode warnings are emitted as structured events, so
any host observability stack can turn them into counters or log lines.

The logging configuration includes:
- Timestamp formatting
- Log level inclusion and filtering
- JSON/Console output
- Logger caching
"""

import logging

import structlog


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configures structlog for the library.

    Sets up structlog with:
    1. ISO format timestamps
    2. Log level inclusion
    3. JSON formatting when `json_logs` is set, console formatting otherwise
    4. Dictionary-based context
    5. Standard library logger factory and bound logger
    6. Logger caching for performance

    Args:
        log_level: Minimum level name (e.g. "DEBUG", "INFO").
        json_logs: Render events as JSON lines instead of console output.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger().setLevel(level)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

# Create a singleton logger instance for the library
logger = structlog.get_logger("bulwark")
