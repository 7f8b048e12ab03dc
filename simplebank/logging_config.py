"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all ledger operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Record attributes set by log_action, emitted only when present
STRUCTURED_FIELDS = ("correlation_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "simplebank",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        log_format: "json" for structured output, "text" for plain lines
        log_file: Path of a log file; stderr when None

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()

    if log_format == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))

    # Prevent propagation to avoid duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str = "simplebank") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log a ledger action as one structured record.

    Args:
        logger: Logger instance
        level: Level name (info, warning, ...)
        message: Log message
        action: Operation performed, e.g. "transfer_tx"
        resource: Affected row, e.g. "account:42"
        correlation_id: Caller's request id
        extra: Additional structured data
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    fields = {"action": action, "resource": resource,
              "correlation_id": correlation_id, "extra": extra}
    for name in STRUCTURED_FIELDS:
        if fields[name]:
            setattr(record, name, fields[name])

    logger.handle(record)
