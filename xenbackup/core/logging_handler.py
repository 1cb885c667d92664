"""
Logging setup and custom handlers for console, file and in-memory capture.
"""
import json
import logging
import sys
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler as BaseRotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

APP_LOGGER = "xenbackup"

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
        }
        details = getattr(record, "details", None)
        if details:
            log_entry["details"] = details
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class InMemoryLogHandler(logging.Handler):
    """
    Custom log handler that stores recent log entries in memory.
    Thread-safe circular buffer with a maximum size.
    """

    def __init__(self, max_records: int = 1000):
        """
        Initialize the in-memory log handler.

        Args:
            max_records: Maximum number of log records to keep in memory
        """
        super().__init__()
        self.max_records = max_records
        self.records = deque(maxlen=max_records)
        self._records_lock = Lock()

    def emit(self, record: logging.LogRecord):
        """
        Store a log record in memory.

        Args:
            record: LogRecord to store
        """
        try:
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "funcName": record.funcName,
            }

            if record.exc_info:
                log_entry["exception"] = logging.Formatter().formatException(record.exc_info)

            with self._records_lock:
                self.records.append(log_entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        level: str = None,
        logger: str = None,
        search: str = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Get filtered log entries, oldest first.

        Args:
            level: Filter by log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            logger: Filter by logger name (partial match)
            search: Search in log messages (case-insensitive)
            limit: Maximum number of most recent records to return
        """
        with self._records_lock:
            logs = list(self.records)

        if level:
            logs = [log for log in logs if log["level"] == level.upper()]

        if logger:
            logs = [log for log in logs if logger.lower() in log["logger"].lower()]

        if search:
            search_lower = search.lower()
            logs = [log for log in logs if search_lower in log["message"].lower()]

        return logs[-limit:]

    def clear(self):
        """Clear all stored log records."""
        with self._records_lock:
            self.records.clear()


# Global instance
_memory_handler: Optional[InMemoryLogHandler] = None


def get_memory_handler() -> InMemoryLogHandler:
    """Get the global in-memory log handler instance."""
    global _memory_handler
    if _memory_handler is None:
        _memory_handler = InMemoryLogHandler(max_records=2000)
    return _memory_handler


def get_file_log_handler(
    log_file: str,
    max_bytes: int = 100 * 1024 * 1024,  # 100 MB
    backup_count: int = 10,
    log_format: str = "text"
) -> BaseRotatingFileHandler:
    """Create a rotating file handler, creating the log directory if needed."""
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = BaseRotatingFileHandler(
        filename=str(log_path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure the application logger.

    Handlers are attached to the ``xenbackup`` logger only; the root logger
    is left alone so embedding applications keep their own configuration.
    Calling this again replaces the handlers installed by a previous call.
    """
    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_xenbackup_handler", False):
            logger.removeHandler(handler)
            if handler is not _memory_handler:
                handler.close()

    console = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        console.setFormatter(JsonFormatter())
    else:
        console.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))
    handlers: List[logging.Handler] = [console, get_memory_handler()]

    if log_file:
        handlers.append(get_file_log_handler(log_file, log_format=log_format))

    for handler in handlers:
        handler._xenbackup_handler = True
        logger.addHandler(handler)

    logger.propagate = False
    return logger
