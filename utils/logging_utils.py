"""
Logging configuration for the sequencer.
Provides consistent logging across all modules.

Modules log event-style messages ("execution_claimed") with structured
fields in `extra={...}`. Both formatters below keep those fields: the text
formatter appends them as key=value pairs, the JSON formatter emits them as
top-level keys for log shippers.
"""
import json
import logging
import sys
import traceback
from datetime import datetime

# Attributes every LogRecord has; anything else came in through `extra`
_RECORD_FIELDS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'asctime',
}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_FIELDS}


class ExtraFormatter(logging.Formatter):
    """Plain text lines with the `extra` fields appended"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extra_fields(record)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            '@timestamp': datetime.utcnow().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info),
            }

        log_data.update(_extra_fields(record))
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", log_file: str = None, structured: bool = False):
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path to write logs
        structured: Emit JSON lines instead of text
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if structured:
        formatter = JsonFormatter()
    else:
        formatter = ExtraFormatter(
            '%(asctime)s [%(name)s] %(levelname)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []
    root_logger.addHandler(console_handler)

    # File handler (optional)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific module."""
    return logging.getLogger(name)
