"""Logging setup: readable console lines plus a JSON-lines run log."""

import logging
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TextIO


# Structured fields copied from log records into JSON output
CONTEXT_FIELDS = ('logical_name', 'kind', 'operation', 'identifier', 'duration')

# Third-party loggers that are only interesting when something breaks
NOISY_LOGGERS = ('boto3', 'botocore', 'urllib3', 's3transfer')


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying the resource context of the record.

    Reconciliation workers run concurrently, so the thread name is kept to
    tell interleaved resources apart.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }

        for field_name in CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_data[field_name] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output.

    Records about a single resource are prefixed with its logical name.
    """

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console.

        Args:
            record: The log record to format

        Returns:
            ``HH:MM:SS LEVEL [logical_name] message``
        """
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = f"{record.levelname:8}"
        if self.use_colors:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        message = record.getMessage()
        logical_name = getattr(record, 'logical_name', None)
        if logical_name:
            message = f"[{logical_name}] {message}"

        line = f"{timestamp} {level} {message}"
        if record.exc_info and record.levelno >= logging.ERROR:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    log_level: str = 'info',
    log_dir: Optional[str] = '.tierstack/logs',
    stream: Optional[TextIO] = None,
) -> Optional[Path]:
    """Configure the root logger for a command invocation.

    Args:
        log_level: Console level (debug, info, warning, error)
        log_dir: Directory for JSON-lines run logs, or None to log to console only
        stream: Console stream, stdout by default

    Returns:
        Path of the JSON log file, if one is written
    """
    level = getattr(logging, log_level.upper())
    stream = stream or sys.stdout

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_dir else level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(level)
    is_tty = hasattr(stream, 'isatty') and stream.isatty()
    console_handler.setFormatter(ConsoleFormatter(use_colors=is_tty))
    root_logger.addHandler(console_handler)

    log_file = None
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"tierstack-{datetime.now(timezone.utc).strftime('%Y%m%d')}.jsonl"
        # Debug always goes to the file
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
