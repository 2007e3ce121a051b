"""
Structured Logging Configuration for torrent-bridge
Provides JSON logging, log rotation, and per-operation context fields.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_log_context: contextvars.ContextVar = contextvars.ContextVar("torrent_bridge_log_context", default={})


class ContextFilter(logging.Filter):
    """
    Add context fields to log records.
    Context is tracked per asyncio task, so concurrent bridge calls do not
    mix their fields.
    """

    @classmethod
    def set_context(cls, **kwargs) -> None:
        """Set context fields for subsequent log messages in this task."""
        context = dict(_log_context.get())
        context.update(kwargs)
        _log_context.set(context)

    @classmethod
    def clear_context(cls, *keys) -> None:
        """Clear specific context fields or all if no keys specified."""
        if not keys:
            _log_context.set({})
            return
        context = dict(_log_context.get())
        for key in keys:
            context.pop(key, None)
        _log_context.set(context)

    @classmethod
    def get_context(cls) -> Dict[str, Any]:
        """Get current context."""
        return dict(_log_context.get())

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to the log record."""
        for key, value in _log_context.get().items():
            setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """
    Format logs as JSON for structured logging.
    Includes timestamp, level, logger name, message, and context fields.
    """

    CONTEXT_FIELDS = [
        "client_type",
        "host",
        "torrent_hash",
        "operation",
    ]

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add context fields if present
        for field in self.CONTEXT_FIELDS:
            if hasattr(record, field):
                value = getattr(record, field)
                if value is not None:
                    log_obj[field] = value

        # Add exception info
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
            log_obj["exception_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None

        # Add extra fields if enabled
        if self.include_extra:
            for key, value in record.__dict__.items():
                if (
                    key not in log_obj
                    and key not in self.CONTEXT_FIELDS
                    and not key.startswith("_")
                    and key not in (
                        "name", "msg", "args", "created", "filename", "funcName",
                        "levelname", "levelno", "lineno", "module", "msecs",
                        "pathname", "process", "processName", "relativeCreated",
                        "stack_info", "exc_info", "exc_text", "thread", "threadName",
                        "message", "asctime", "taskName",
                    )
                ):
                    try:
                        json.dumps(value)  # Check if serializable
                        log_obj[key] = value
                    except (TypeError, ValueError):
                        log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for better readability.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors."""
        message = super().format(record)

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            if color:
                message = message.replace(
                    record.levelname,
                    f"{color}{record.levelname}{self.RESET}",
                    1
                )

        context_parts = []
        for field in ["client_type", "operation", "torrent_hash"]:
            if hasattr(record, field):
                value = getattr(record, field)
                if value:
                    context_parts.append(f"{field}={value}")

        if context_parts:
            message += f" [{', '.join(context_parts)}]"

        return message


# Component-specific log levels
COMPONENT_LOG_LEVELS = {
    "aiohttp": "WARNING",
    "aiohttp.client": "WARNING",
    "aiohttp.access": "WARNING",
}


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    use_colors: bool = True,
) -> ContextFilter:
    """
    Configure logging with optional file rotation and structured output.

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (enables rotation if set)
        log_format: "text" for human-readable, "json" for structured
        max_file_size_mb: Maximum size of each log file before rotation
        backup_count: Number of rotated log files to keep
        use_colors: Use colored output in console (if terminal supports it)

    Returns:
        The ContextFilter attached to every handler
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = ContextFilter()

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.addFilter(context_filter)

    if log_format == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.addHandler(console_handler)

    # File handler with rotation (if log_file specified)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.addFilter(context_filter)

        if log_format == "json":
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))

        root_logger.addHandler(file_handler)

    # Set component-specific log levels
    for logger_name, level in COMPONENT_LOG_LEVELS.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level))

    logger = logging.getLogger(__name__)
    logger.debug(
        f"Logging configured: level={log_level}, format={log_format}, "
        f"file={log_file or 'none'}"
    )

    return context_filter


class LogContext:
    """
    Context manager for setting log context fields.

    Usage:
        with LogContext(torrent_hash="ABC123", operation="get_torrent_files"):
            logger.info("Fetching files")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        context = dict(_log_context.get())
        context.update(self.context)
        self._token = _log_context.set(context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
        return False
