"""
Logging configuration for nano-brew.

Every command logs through the root logger configured here:
- timestamped, level-tagged records
- console output (colored when attached to a terminal) plus an optional log file
- rank-aware verbosity so multi-process runs only chatter on rank 0
"""

import logging
import sys
from pathlib import Path
from typing import Optional


class Colors:
    """ANSI color codes for different log levels."""
    GREY = '\033[90m'
    BLUE = '\033[94m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD_RED = '\033[91m\033[1m'
    RESET = '\033[0m'


class ColorFormatter(logging.Formatter):
    """Formatter that tints the level name on console output."""

    COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD_RED,
    }

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record):
        if not (self.use_colors and record.levelno in self.COLORS):
            return super().format(record)
        # Tint a copy so file handlers sharing the record keep a plain level name.
        tinted = logging.makeLogRecord(record.__dict__)
        tinted.levelname = f"{self.COLORS[record.levelno]}{record.levelname}{Colors.RESET}"
        return super().format(tinted)


DEFAULT_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s: %(message)s'
DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: Optional[bool] = None,
    log_format: Optional[str] = None
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a log file, appended to
        use_colors: Color console output; defaults to whether stderr is a terminal
        log_format: Custom format string (default: timestamp | level | module: message)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format is None:
        log_format = DEFAULT_FORMAT
        date_format = DEFAULT_DATE_FORMAT
    else:
        date_format = None

    if use_colors is None:
        use_colors = sys.stderr.isatty()

    # Diagnostics go to stderr so command output on stdout stays clean.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        ColorFormatter(log_format, datefmt=date_format, use_colors=use_colors)
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        root_logger.addHandler(file_handler)


def setup_process_logging(rank: int, log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging for one process of a multi-process run.

    Rank 0 logs at ``log_level``; every other rank only reports warnings and errors.
    """
    level = log_level if rank == 0 else "WARNING"
    setup_logging(log_level=level, log_file=log_file if rank == 0 else None)


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger for a module.

    Usage:
        from brew.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Resuming from %s", path)
    """
    return logging.getLogger(name)
