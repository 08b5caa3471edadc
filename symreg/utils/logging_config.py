"""
SYMREG Logging Configuration

Logging setup with:
- Console output with color formatting
- Optional file logging
- Module-level loggers
- Scoped severity override (LogContext.latch) for noisy filter substeps
- Performance timing utilities
"""

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
from datetime import datetime

ROOT_LOGGER = "SYMREG"


class ColorFormatter(logging.Formatter):
    """Custom formatter with color support for console output"""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level_short = record.levelname[0]  # D, I, W, E, C
        return f"{color}[{timestamp}] {level_short} | {record.name}: {record.getMessage()}{reset}"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    module_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Setup logging for SYMREG

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
        module_name: Root module name for logger hierarchy

    Returns:
        Configured root logger
    """
    logger = logging.getLogger(module_name)
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColorFormatter())
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a module-level logger

    Args:
        name: Module name (will be prefixed with SYMREG)

    Returns:
        Logger instance
    """
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class LogContext:
    """
    Logging context passed down from the registration driver

    Wraps one logger of the SYMREG hierarchy. Collaborators log through
    children of this logger, so a latch on the context silences them
    without touching any other part of the hierarchy.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger("registration")

    def get_child(self, name: str) -> logging.Logger:
        return self.logger.getChild(name)

    @contextmanager
    def latch(self, level: int = logging.WARNING) -> Iterator["LogContext"]:
        """
        Temporarily raise the severity threshold of the wrapped logger

        Children without an explicit level inherit the raised threshold.
        The previous level is restored on exit, including on error.
        """
        previous = self.logger.level
        effective = self.logger.getEffectiveLevel()
        self.logger.setLevel(max(level, effective))
        try:
            yield self
        finally:
            self.logger.setLevel(previous)


class Timer:
    """Context manager for timing code sections"""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or get_logger("timer")
        self.start_time = None
        self.elapsed = 0.0

    def __enter__(self):
        self.start_time = datetime.now()
        return self

    def __exit__(self, *args):
        self.elapsed = (datetime.now() - self.start_time).total_seconds()
        self.logger.info(f"{self.name}: {self.elapsed:.2f}s")
