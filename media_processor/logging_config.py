"""Logging setup for the media processing engine.

The engine's modules log through ``logging.getLogger(__name__)`` and never
configure handlers themselves. Applications call ``setup_logging`` once at
startup to get console output and, optionally, a rotating JSON log file.
"""

import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

from media_processor.config import EngineConfig

LOGGER_NAME = "media_processor"

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
}


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Formats log records as JSON with timestamp, level, logger, message and
    any extra fields passed through ``extra=``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted string
        """
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    config: Optional[EngineConfig] = None,
    log_path: Optional[str] = None,
    json_format: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the ``media_processor`` logger.

    Args:
        config: Engine configuration (log level)
        log_path: Directory for a rotating log file (console only if None)
        json_format: Write the log file as JSON lines
        max_bytes: Maximum size of the log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger
    """
    if config is None:
        from media_processor.config import get_config

        config = get_config()

    level = getattr(logging, config.log_level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    logger.addHandler(console_handler)

    if log_path:
        try:
            os.makedirs(log_path, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_path, "media_processor.log"),
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setLevel(level)
            if json_format:
                file_handler.setFormatter(JsonFormatter())
            else:
                file_handler.setFormatter(console_handler.formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not create log file: {e}. Logging to console only.")

    return logger
