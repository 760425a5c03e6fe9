"""
Reporting for vpsboot runs.

Includes logging setup, the structured log formatter, console helpers,
and log inspection used for crash diagnostics.
"""

import json
import logging
import os
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

LOGGER_NAME = "vpsboot"


def setup_logging(
    log_file: Path,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
    max_bytes: int = 1_048_576,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Set up logging for a bootstrap run.

    Args:
        log_file: Path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON lines) or "pretty" (human-readable)
        console_output: Also log to console
        max_bytes: Rotate (archive and truncate) past this size
        backup_count: Number of archived log files to keep

    Returns:
        Configured logger
    """
    # Create log directory if needed
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []  # Clear existing handlers
    logger.propagate = False

    file_handler = DurableRotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count
    )
    if log_format == "structured":
        file_handler.setFormatter(StructuredFormatter(last_timestamp=last_logged_timestamp(log_file)))
    else:
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logger.addHandler(file_handler)

    # Console handler
    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )

        logger.addHandler(console_handler)

    return logger


class DurableRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that forces every record to disk.

    The process may be killed by a reboot at any moment, so each record is
    flushed and fsynced before emit returns.
    """

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        if self.stream is not None:
            try:
                os.fsync(self.stream.fileno())
            except OSError:
                self.handleError(record)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Timestamps never go backwards within a log file: a record created
    earlier than the previous one (clock step) is stamped with the previous
    timestamp instead.
    """

    def __init__(self, last_timestamp: Optional[datetime] = None):
        super().__init__()
        self._last = last_timestamp

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if self._last is not None and timestamp < self._last:
            timestamp = self._last
        self._last = timestamp

        log_data = {
            "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "stage"):
            log_data["stage"] = record.stage
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def parse_log_timestamp(value: str) -> datetime:
    """Parse a timestamp written by StructuredFormatter."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def last_logged_timestamp(log_file: Path) -> Optional[datetime]:
    """
    Get the timestamp of the last structured record in a log file.

    Returns:
        The timestamp, or None if the file is missing or has no JSON records
    """
    for line in reversed(tail_log(log_file, 20)):
        try:
            return parse_log_timestamp(json.loads(line)["timestamp"])
        except (ValueError, KeyError, TypeError):
            continue
    return None


def tail_log(log_file: Path, lines: int = 20) -> List[str]:
    """
    Return the last lines of a log file.

    Args:
        log_file: Path to log file
        lines: Number of lines to return

    Returns:
        Lines without trailing newlines (empty if the file is missing)
    """
    if not log_file.exists():
        return []
    with open(log_file, "r", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")
