"""
Logging configuration for traingraph.

Features:
- Timestamped records with level and module name
- Console and optional file output
- Color-coded console levels
- Rank prefix when running with more than one worker
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from traingraph.distributed.context import MPIContext


# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for different log levels."""
    GREY = '\033[90m'
    BLUE = '\033[94m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD_RED = '\033[91m\033[1m'
    RESET = '\033[0m'


class ColorFormatter(logging.Formatter):
    """Color-coded formatter for console output."""

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
        """Format log record with colors if enabled."""
        if not (self.use_colors and record.levelno in self.COLORS):
            return super().format(record)
        levelname = record.levelname
        record.levelname = f"{self.COLORS[record.levelno]}{levelname}{Colors.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class RankFilter(logging.Filter):
    """Adds `rank` to every record ("" for single-worker runs)."""

    def __init__(self, world: MPIContext):
        super().__init__()
        self.rank = f"[rank {world.world_rank}/{world.world_size}] " if world.is_distributed else ""

    def filter(self, record):
        record.rank = self.rank
        return True


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True,
    log_format: Optional[str] = None,
    world: Optional[MPIContext] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        use_colors: Enable color-coded console output
        log_format: Custom format string; may reference %(rank)s
        world: Worker placement for the rank prefix (default: single worker)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Default format: timestamp | level | rank module: message
    if log_format is None:
        log_format = '%(asctime)s | %(levelname)-8s | %(rank)s%(name)s: %(message)s'
        date_format = '%Y-%m-%d %H:%M:%S'
    else:
        date_format = None
    rank_filter = RankFilter(world or MPIContext())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.addFilter(rank_filter)
    console_handler.setFormatter(ColorFormatter(log_format, datefmt=date_format, use_colors=use_colors))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(level)
        file_handler.addFilter(rank_filter)
        # File output doesn't use colors
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger for a module.

    Usage:
        from traingraph.logging import get_logger
        logger = get_logger(__name__)
    """
    return logging.getLogger(name)


def quick_setup(level: str = "INFO") -> None:
    """Quick setup for logging in scripts."""
    setup_logging(log_level=level)
