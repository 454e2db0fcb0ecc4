"""
Logging configuration for the outreach service.
Every module logs through a named `outreach.*` logger; this sets up the
root handlers once per process.
"""
import json
import logging
import sys
import traceback
from datetime import datetime

# Attributes every LogRecord has; anything else came in through `extra=`
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Chatty third-party loggers
_QUIET = ("pymongo", "httpx", "httpcore", "aiosmtplib", "groq", "openai")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with `extra=` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "@timestamp": datetime.utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                data[key] = value
        return json.dumps(data, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text format that appends `extra=` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in record.__dict__.items() if k not in _RESERVED}
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


def setup_logging(level: str = "INFO", log_file: str = None, structured: bool = False):
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path to write logs
        structured: JSON lines instead of the plain text format
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if structured:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []  # Calling twice must not duplicate output
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

    for name in _QUIET:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the outreach namespace."""
    if not name.startswith("outreach"):
        name = f"outreach.{name}"
    return logging.getLogger(name)
