"""Centralized logging configuration.

This module provides:
- JSONFormatter for structured logging
- PlainFormatter for local debugging on stderr
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone


_TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service: str = None):
        super().__init__()
        self.service = service or "quickbooks-mcp-server"

    def format(self, record: logging.LogRecord) -> str:
        # Extract tag from message if present: [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = _TAG_PATTERN.match(message)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "logger": record.name,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            }
        }

        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(level: str = "INFO", log_format: str = "plain") -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, ...).
        log_format: "plain" for human-readable lines, "json" for one JSON
            object per line.

    Returns:
        Configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    if log_format == "json":
        stderr_handler.setFormatter(JSONFormatter())
    else:
        stderr_handler.setFormatter(PlainFormatter())
    root_logger.addHandler(stderr_handler)

    # Suppress noisy HTTP client logs (upstream calls use httpx)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"[STARTUP] Logging configured: level={level}, format={log_format}")

    return root_logger
