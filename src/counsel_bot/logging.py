"""Logging setup for counsel_bot (plain or JSON lines on stdout).

Records may carry conversation extras (``extra={"conversation_id": ...}``);
both formats render whichever of ``EXTRA_KEYS`` are present.
"""

import json
import logging
import sys
from datetime import datetime, timezone

EXTRA_KEYS = ("conversation_id", "state", "risk_level", "task_id", "attempt", "duration_ms")

PLAIN_FORMAT = "%(asctime)s [%(name)s] %(levelname)s - %(message)s"


def _extras(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in EXTRA_KEYS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_extras(record),
        }
        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class ConversationFormatter(logging.Formatter):
    """Plain text with the conversation extras appended as ``key=value``.

    ``conversation=<id>`` is rendered first so a terminal log can be grepped by
    conversation.
    """

    def __init__(self):
        super().__init__(PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    def formatMessage(self, record):
        line = super().formatMessage(record)
        extras = _extras(record)
        if not extras:
            return line
        conversation = extras.pop("conversation_id", None)
        tags = [f"conversation={conversation}"] if conversation is not None else []
        tags.extend(f"{k}={v}" for k, v in extras.items())
        return f"{line} [{' '.join(tags)}]"


def setup_logging(level="INFO", json_output: bool = False) -> logging.Logger:
    """Configure the ``counsel_bot`` logger once; later calls only adjust the level."""
    logger = logging.getLogger("counsel_bot")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter() if json_output else ConversationFormatter())
        logger.addHandler(handler)
        logger.propagate = False

    return logger
