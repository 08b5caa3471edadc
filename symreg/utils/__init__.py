"""SYMREG Utilities Module"""

from .logging_config import setup_logging, get_logger, LogContext, Timer
from .device import get_device

__all__ = [
    "setup_logging",
    "get_logger",
    "LogContext",
    "Timer",
    "get_device",
]
