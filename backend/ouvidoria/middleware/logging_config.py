"""
Structured logging.

In production every record is a single JSON line carrying the request id,
plus the case/protocol identifiers when a service attaches them via
`extra=`. Locally `json_logs=False` keeps the plain text format.
"""

import json
import logging
from datetime import datetime, timezone

from ouvidoria.middleware.request_context import get_request_id

# Keys services may pass through `extra=` that are worth indexing
_EXTRA_FIELDS = ("duration_ms", "case_id", "protocol", "channel", "rule_id")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
        }
        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def configure_logging(log_level: str = "INFO", json_logs: bool = True):
    handler = logging.StreamHandler()
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
