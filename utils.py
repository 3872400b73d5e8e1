# utils.py
import logging

import structlog


def configure_logging(level: str = "INFO") -> None:
    min_level = logging.getLevelName(level.upper())
    if not isinstance(min_level, int):
        min_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(),
    )


def preview(text, limit: int = 500) -> str:
    """Shortened text for log lines."""
    if text is None:
        return "<nil>"
    text = str(text)
    return text if len(text) <= limit else text[:limit] + "..."
