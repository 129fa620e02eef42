"""
Logging configuration for bpmkey.

This module sets up the logging system with multiple outputs:
    - Console: Real-time messages with tqdm-compatible formatting
    - log_full_<timestamp>.log: Complete log of all events (DEBUG and above)
    - log_errors_<timestamp>.log: Only ERROR and CRITICAL level messages
    - analysis_failures_<timestamp>.log: Files whose analysis produced no
      usable BPM/key, with the reason

File outputs are only created when a log directory is configured; otherwise
logging goes to the console only.

Usage:
    from bpmkey.core.logger import setup_logging, get_logger

    setup_logging(log_dir)  # Call once at startup
    logger = get_logger(__name__)  # Get logger for each module

    logger.info("Starting analysis")
    log_analysis_failure(logger, "/music/song.mp3", "low_confidence")
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

import colorama
from colorama import Fore, Style
from tqdm import tqdm


# Log file name prefixes (created in the log directory)
LOG_FULL_PREFIX = "log_full"
LOG_ERRORS_PREFIX = "log_errors"
ANALYSIS_FAILURES_PREFIX = "analysis_failures"

# Log format for file output (detailed with timestamp)
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log format for console output (compact, tqdm-friendly)
CONSOLE_LOG_FORMAT = "%(levelname)s: %(message)s"


class ColoredConsoleFormatter(logging.Formatter):
    """
    Formatter that colors the level name on console output.

    Colors:
        - DEBUG: Cyan
        - INFO: Green
        - WARNING: Yellow
        - ERROR: Red
        - CRITICAL: Bright Red
    """

    LEVEL_COLORS = {
        logging.DEBUG: Fore.CYAN,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__(CONSOLE_LOG_FORMAT)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record, coloring the level name when enabled.

        Args:
            record: The log record to format.

        Returns:
            Formatted string, with ANSI color codes if colors are enabled.
        """
        if not self.use_colors:
            return super().format(record)

        color = self.LEVEL_COLORS.get(record.levelno, "")
        message = f"{color}{record.levelname}{Style.RESET_ALL}: {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


class TqdmLoggingHandler(logging.Handler):
    """
    Console handler that writes through tqdm.write().

    The analyze command shows a progress bar while the queue drains;
    writing through tqdm keeps log lines above the bar instead of
    tearing it apart.
    """

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, file=self.stream)
        except Exception:
            self.handleError(record)


class AnalysisFailureHandler(logging.Handler):
    """
    Handler that captures analysis failures for the failure report file.

    Only records carrying the 'analysis_failed_path' extra are written,
    in a simple human-readable format:

        /music/Artist/Song.mp3
        reason: low_confidence (bpm=None key=Am confidence=0.04)

    Use log_analysis_failure() to emit such records.

    Attributes:
        report_path: Path to the analysis_failures log file.
        report_file: Open file handle (set by open()).
    """

    def __init__(self, report_path: Path) -> None:
        super().__init__()
        self.report_path = report_path
        self.report_file: TextIO | None = None

    def open(self) -> None:
        """Open the report file for writing (overwrites existing content)."""
        self.report_file = open(self.report_path, "w", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        if not hasattr(record, "analysis_failed_path"):
            return

        if self.report_file is None:
            return

        try:
            path = getattr(record, "analysis_failed_path")
            reason = getattr(record, "analysis_failed_reason", "unknown")
            summary = getattr(record, "analysis_failed_summary", "")

            self.report_file.write(f"{path}\n")
            if summary:
                self.report_file.write(f"reason: {reason} ({summary})\n\n")
            else:
                self.report_file.write(f"reason: {reason}\n\n")
            self.report_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """Close the report file handle. Safe to call multiple times."""
        if self.report_file is not None:
            try:
                self.report_file.close()
            except OSError:
                pass
            self.report_file = None
        super().close()


class ErrorOnlyFilter(logging.Filter):
    """Filter that only allows ERROR and CRITICAL level records."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def setup_logging(
    log_dir: Path | None = None,
    level: str = "INFO",
    colored: bool = True
) -> None:
    """
    Configure the logging system for the application.

    This function should be called ONCE at application startup, after
    the configuration is loaded.

    Args:
        log_dir: Directory where log files will be created, or None for
                 console-only logging.
        level: Console log level name (DEBUG, INFO, WARNING, ...).
        colored: Whether to color the console level names.

    Behavior:
        1. Configure root logger level to DEBUG
        2. Add console handler (TqdmLoggingHandler) at the requested level
        3. If log_dir is given, create it and add:
           - full log file handler (DEBUG)
           - error-only log file handler (ERROR+)
           - analysis failure report handler
    """
    colorama.init()

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(ColoredConsoleFormatter(use_colors=colored))
    root_logger.addHandler(console_handler)

    if log_dir is None:
        return

    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    full_handler = logging.FileHandler(
        log_dir / f"{LOG_FULL_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    full_handler.setLevel(logging.DEBUG)
    full_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    root_logger.addHandler(full_handler)

    error_handler = logging.FileHandler(
        log_dir / f"{LOG_ERRORS_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    error_handler.setLevel(logging.DEBUG)  # Filter handles the level restriction
    error_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    error_handler.addFilter(ErrorOnlyFilter())
    root_logger.addHandler(error_handler)

    failures_handler = AnalysisFailureHandler(log_dir / f"{ANALYSIS_FAILURES_PREFIX}_{timestamp}.log")
    failures_handler.open()
    root_logger.addHandler(failures_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The logger name, typically __name__ of the calling module.

    Returns:
        logging.Logger: A logger instance configured by setup_logging().
    """
    return logging.getLogger(name)


def log_analysis_failure(
    logger: logging.Logger,
    file_path: str,
    reason: str,
    summary: str = ""
) -> None:
    """
    Log a file whose analysis produced no usable result.

    The record goes to the full log at DEBUG level and is picked up by
    AnalysisFailureHandler for the failure report.

    Args:
        logger: Logger to emit on.
        file_path: Absolute path of the analyzed file.
        reason: Short machine-friendly reason (e.g. 'aubio_not_installed').
        summary: Optional free-form detail.
    """
    logger.debug(
        f"Analysis produced no usable result for {file_path}: {reason}",
        extra={
            "analysis_failed_path": file_path,
            "analysis_failed_reason": reason,
            "analysis_failed_summary": summary,
        }
    )


def shutdown_logging() -> None:
    """
    Flush and close all handlers on the root logger.

    Typically called in a finally block at application exit.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except OSError:
            pass
        root_logger.removeHandler(handler)
