"""
Logging Setup
=============

One JSON object per line on stdout. Messages are snake_case event names,
context travels in ``extra``:

    logger.warning("drift_alert_raised", extra={"alert_type": "latency_drift", "severity": "medium"})

    {"timestamp": "2024-01-27T12:00:00.000+00:00", "level": "WARNING",
     "logger": "tickflow.drift", "service": "tickflow", "version": "0.1.0",
     "message": "drift_alert_raised", "alert_type": "latency_drift", "severity": "medium"}
"""

import logging
import math
import sys
from datetime import datetime, timezone
from typing import IO, Any, Optional

import orjson

from tickflow import __version__

# LogRecord attributes never copied into the payload
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}

# Noisy third-party loggers held at WARNING
QUIET_LOGGERS = ("aiohttp", "asyncio", "uvicorn", "uvicorn.access")


def _to_json_value(value: Any) -> Any:
    """
    Shape an ``extra`` value for orjson.

    Domain objects with ``to_dict`` are expanded. Non-finite floats become
    strings, since orjson would write them as null.
    """
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if value is None or isinstance(value, (str, int, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_json_value(v) for v in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _to_json_value(to_dict())
    return str(value)


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str = "tickflow") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "version": __version__,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_") or key in entry:
                continue
            entry[key] = _to_json_value(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
            entry["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None

        return orjson.dumps(entry).decode("utf-8")


def setup_logging(log_level: str = "INFO", stream: Optional[IO[str]] = None) -> None:
    """
    Route every logger through a single JSON handler.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown: INFO)
        stream: Output stream (default: stdout)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
