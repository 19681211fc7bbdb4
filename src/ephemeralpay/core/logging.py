"""
Logging setup for ephemeralpay.

Every module logs under the ``ephemeralpay`` logger via ``get_logger``.
Nothing is configured on import; hosts call ``configure_logging`` or wire
the logger into their own handlers.
"""

import json
import logging
import sys
from datetime import datetime, timezone

LOGGER_NAME = "ephemeralpay"

TEXT_FORMAT = "[%(asctime)s] %(levelname)s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, safe for any message content."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: int | str = logging.INFO, json_format: bool = False) -> logging.Logger:
    """
    Attach a stdout handler to the ephemeralpay logger.

    Re-configuring replaces the previous handler. Reclaim failures are
    logged at CRITICAL, so do not filter above ERROR in production.

    Args:
        level: Logging level (e.g., logging.INFO, "DEBUG")
        json_format: Emit one JSON object per line instead of text
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)

    # Host applications keep their own root handlers
    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get ``ephemeralpay`` or one of its children."""
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)
