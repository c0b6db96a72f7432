"""JSON-lines logging for the server, the CLI and the worker threads.

Every record is written as one JSON object per line to the console and to a
rotating file.  Context passed through ``extra`` is lifted to the top level:
``request_id`` and ``order_number`` directly, and an ``extra`` dict merged
field by field.
"""

import json
import logging
import logging.handlers
import os
from datetime import UTC, datetime

_CONTEXT_FIELDS = ("request_id", "order_number", "transaction_id")


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                log_record[name] = getattr(record, name)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            # merged flat, never nested under "extra"
            log_record.update(extra)
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(log_dir: str = "logs", level: int | str = logging.INFO) -> None:
    """Configure the root logger with JSON console and rotating file handlers.

    Args:
        log_dir: Directory for ``ghee_shop.log``; created if missing.
        level: Logging level (number or name) for the root logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = JsonFormatter()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, "ghee_shop.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB per file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
