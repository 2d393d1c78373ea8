"""
Logging configuration for the API and the worker.

LOG_FORMAT=text keeps the plain basicConfig layout; LOG_FORMAT=json emits
one JSON object per line with the correlation id of the current request or
worker cycle, plus the action ids a record was logged with.
"""

import json
import logging
from datetime import datetime, timezone

from indexer_agent.middleware.request_context import get_request_id

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Extra attributes copied into JSON output when a record carries them
_EXTRA_FIELDS = ("duration_ms", "action_id", "action_ids", "cycle")


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    if log_format != "json":
        logging.basicConfig(level=level, format=TEXT_FORMAT)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
