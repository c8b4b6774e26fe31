"""Structured logging setup for the token pipeline service."""

import logging
import json
import sys
from datetime import datetime, timezone

from ..config.settings import LoggingConfig


_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module',
    'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName', 'created', 'msecs',
    'relativeCreated', 'thread', 'threadName', 'processName', 'process', 'message',
    'taskName',
])


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Extra fields (service name, ctx_* context)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Text formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
        level = record.levelname

        if self.use_colors and level in self.COLORS:
            level = f"{self.COLORS[level]}{level}{self.COLORS['RESET']}"

        formatted = f"{timestamp} [{level}] {record.name}: {record.getMessage()}"

        context = {
            key[4:]: value for key, value in record.__dict__.items()
            if key.startswith('ctx_')
        }
        if context:
            formatted += " " + " ".join(f"{key}={value}" for key, value in context.items())

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


class ServiceContextFilter(logging.Filter):
    """Stamp every record with the service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record):
        record.service = self.service_name
        return True


def setup_logging(config: LoggingConfig, service_name: str = "token-pipeline") -> None:
    """
    Setup logging configuration for the service.

    Args:
        config: Logging configuration
        service_name: Name of the service for log context
    """

    handler = _build_handler(config.output)
    handler.setFormatter(JSONFormatter() if config.format.lower() == 'json' else TextFormatter())
    handler.addFilter(ServiceContextFilter(service_name))

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper()))
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
    logging.getLogger('asyncpg').setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging configured: level={config.level}, format={config.format}, "
        f"output={config.output}, service={service_name}"
    )


def _build_handler(output: str) -> logging.Handler:
    """stdout, stderr or a file path."""
    streams = {'stdout': sys.stdout, 'stderr': sys.stderr}
    stream = streams.get(output.lower())
    if stream is not None:
        return logging.StreamHandler(stream)
    return logging.FileHandler(output)


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional ctx_* fields."""
    extra = {f"ctx_{key}": value for key, value in context.items()}
    logger.log(level, message, extra=extra)


def log_error_with_context(logger: logging.Logger, error: Exception, operation: str,
                           level: int = logging.ERROR, **context):
    """Log an error with its kind and identifying context."""

    log_with_context(
        logger,
        level,
        f"Error in {operation}: {error}",
        operation=operation,
        error_kind=type(error).__name__,
        **context
    )

    # Full traceback only at debug level
    logger.debug(f"Full traceback for {operation}:", exc_info=error)
