"""
Logging - Engine logging configuration and disk persistence.

Provides:
- Python logging configuration with console and optional file output
- Log persistence to daily files: finax-YYYY-MM-DD.log
- Automatic cleanup of old log files

Callers must never pass secrets to a logger; addresses are logged
shortened via utils.format_address.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional
import logging

from ..utils import get_logs_dir

LOG_FILE_PREFIX = "finax-"
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%H:%M:%S'


class DailyFileHandler(logging.Handler):
    """Routes formatted records into the daily log file."""

    def __init__(self, retention_days: int, logs_dir: Optional[Path] = None):
        super().__init__()
        self.retention_days = retention_days
        self.logs_dir = logs_dir
        self.setFormatter(logging.Formatter('[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
                                            datefmt='%Y-%m-%d %H:%M:%S'))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            append_log(self.format(record), self.retention_days, self.logs_dir)
        except Exception:
            self.handleError(record)


def configure_logging(level: int = logging.INFO, retention_days: int = 0,
                      logs_dir: Optional[Path] = None) -> None:
    """
    Configure Python logging for the engine.

    Sets up a root logger with console output, plus a daily file handler
    when retention_days > 0.

    Args:
        level: Logging level (default: INFO)
        retention_days: Days of log files to keep (0 = console only)
        logs_dir: Override for the logs directory
    """
    root_logger = logging.getLogger()

    # Only configure if not already configured
    if root_logger.handlers:
        return

    root_logger.setLevel(level)

    # Console handler with simple format
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if retention_days > 0:
        file_handler = DailyFileHandler(retention_days, logs_dir)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)
        cleanup_old_logs(retention_days, logs_dir)


def get_log_file_path(date: Optional[datetime] = None, logs_dir: Optional[Path] = None) -> Path:
    """Get the log file path for a specific date (defaults to today)."""
    if date is None:
        date = datetime.now()
    filename = f"{LOG_FILE_PREFIX}{date.strftime('%Y-%m-%d')}.log"
    return (logs_dir or get_logs_dir()) / filename


def append_log(message: str, retention_days: int = 0, logs_dir: Optional[Path] = None) -> None:
    """
    Append a log line to today's log file.

    Args:
        message: The log line (should already include timestamp)
        retention_days: If 0, don't save to disk
    """
    if retention_days <= 0:
        return

    log_path = get_log_file_path(logs_dir=logs_dir)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, 'a', encoding='utf-8') as f:
        f.write(message + '\n')


def load_recent_logs(max_lines: int = 500, logs_dir: Optional[Path] = None) -> list[str]:
    """
    Load recent log lines from disk.

    Reads from today's log file, and if needed yesterday's,
    to get up to max_lines.

    Returns:
        List of log lines, oldest first
    """
    if max_lines <= 0:
        return []

    lines = []

    today_path = get_log_file_path(logs_dir=logs_dir)
    if today_path.exists():
        lines = _read_last_n_lines(today_path, max_lines)

    # If we need more lines, try yesterday
    if len(lines) < max_lines:
        yesterday_path = get_log_file_path(datetime.now() - timedelta(days=1), logs_dir)
        if yesterday_path.exists():
            remaining = max_lines - len(lines)
            lines = _read_last_n_lines(yesterday_path, remaining) + lines

    return lines


def _read_last_n_lines(file_path: Path, n: int) -> list[str]:
    """Read the last N lines from a file."""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            all_lines = f.readlines()
    except OSError:
        return []
    return [line.rstrip('\n') for line in all_lines[-n:]]


def cleanup_old_logs(retention_days: int, logs_dir: Optional[Path] = None) -> int:
    """
    Delete log files older than retention_days.

    Returns:
        Number of files deleted
    """
    if retention_days < 0:
        return 0

    logs_dir = logs_dir or get_logs_dir()
    if not logs_dir.exists():
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for file_path in logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"):
        try:
            file_date = datetime.strptime(file_path.stem[len(LOG_FILE_PREFIX):], "%Y-%m-%d")
            if file_date < cutoff_date:
                file_path.unlink()
                deleted_count += 1
        except (ValueError, OSError):
            # Skip files that don't match expected format
            continue

    return deleted_count
