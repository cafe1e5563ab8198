"""Structured logging utilities for operational visibility.

Provides:
- JSON structured logging for machine parsing
- Contextual logging with operation metadata via ``extra={"context": ...}``
- Rotating file handler setup for the Flask app
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


class StructuredFormatter(logging.Formatter):
    """Custom formatter that outputs structured JSON logs.

    Includes:
    - Timestamp
    - Log level
    - Logger name
    - Message
    - Structured context data
    - Exception info if present
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: LogRecord to format

        Returns:
            JSON string with structured log data
        """
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add structured context if available
        if hasattr(record, 'context'):
            log_data["context"] = record.context

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(app) -> Optional[logging.Handler]:
    """Attach a rotating JSON file handler according to the app config.

    Args:
        app: Flask application providing LOG_FILE and LOG_LEVEL

    Returns:
        The installed handler, or None when file logging is disabled
    """
    log_file = app.config.get('LOG_FILE')
    log_level = app.config.get('LOG_LEVEL', 'INFO')
    if not log_file:
        return None

    log_dir = os.path.dirname(log_file)
    if log_dir and not os.path.exists(log_dir):
        os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger()
    for existing in root.handlers:
        if getattr(existing, 'baseFilename', None) == os.path.abspath(log_file):
            return existing

    handler = RotatingFileHandler(log_file, maxBytes=10*1024*1024, backupCount=3, encoding='utf-8')
    handler.setFormatter(StructuredFormatter())
    handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.addHandler(handler)
    return handler


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """Log a message with a structured context payload.

    Args:
        logger: Logger instance
        level: logging level (e.g. logging.WARNING)
        message: Human readable message
        context: Optional structured data attached to the record
    """
    logger.log(level, message, extra={"context": context or {}})
