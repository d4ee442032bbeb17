"""Logging setup for Converge.

User-facing progress (PLAY/TASK banners, host statuses, recap) is printed by
the playbook runner. Everything else goes through standard loggers named
after their modules, configured here from the CLI verbosity.
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Verbosity level mapping
VERBOSITY_LEVELS = {
    0: logging.WARNING,   # Default: warnings and errors only
    1: logging.INFO,      # -v
    2: logging.DEBUG,     # -vv and above
}

ROOT_LOGGER = "converge"


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS.get(min(max(verbosity, 0), 2), logging.DEBUG)


def configure_logging(
    level: int = logging.WARNING,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> logging.Logger:
    """Configure the ``converge`` logger hierarchy.

    Args:
        level: Console logging level
        log_file: Optional path to also write logs to
        file_level: Separate level for the file handler (defaults to level)

    Returns:
        The configured package logger
    """
    format_string = DEBUG_FORMAT if level <= logging.DEBUG else DEFAULT_FORMAT

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(min(level, file_level or level))
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        # Always use detailed format for file logging
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        logger.addHandler(file_handler)

    return logger


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time an operation and log its duration.

    Example:
        >>> with log_performance(logger, "Play 'web'", hosts=5):
        ...     await runner.run()
        INFO: Play 'web' completed in 1.204s (hosts=5)
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        if threshold is None or duration >= threshold:
            message = f"{operation} completed in {duration:.3f}s"
            if context:
                message += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
            logger.log(level, message)
