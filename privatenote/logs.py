from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

# Fields a caller may attach through ``extra=`` without clobbering the envelope.
_RESERVED = ("ts", "level", "logger", "msg", "event")


# --- Structured JSON logging ---
class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    ``extra={"event": ..., "extra_data": {...}}`` adds an event name and flat
    fields. Fingerprints are logged truncated; titles and content never.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc).replace(microsecond=0)
        entry: Dict[str, Any] = {
            "ts": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            entry["event"] = event
        for key, value in (getattr(record, "extra_data", None) or {}).items():
            if key not in _RESERVED:
                entry[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            entry["error"] = str(exc)
            entry["error_type"] = type(exc).__name__
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
