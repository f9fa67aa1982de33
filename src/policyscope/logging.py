from __future__ import annotations

import json
import logging
import time
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

_EXTRA_FIELDS = ("device_id", "policy_id", "source_ids", "diagnostic")


def _utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                base[key] = value
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=True)


def configure_logging(level: str = "INFO", log_format: str = "text") -> None:
    """Send log records to stderr, either through rich or as JSON lines."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    handler: logging.Handler
    if log_format == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )

    if root.handlers:
        root.handlers = []
    root.addHandler(handler)
