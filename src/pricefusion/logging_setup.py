"""
Logging Setup Module
====================

One JSON object per line on stdout (stderr for `replay`). Event names are snake_case messages,
structured context travels in ``extra``:

    logger.debug("fusion_outliers_filtered", extra={"outliers": ["CoinGecko"]})

    {"timestamp": "2024-01-27T12:00:00.000+00:00", "level": "DEBUG",
     "logger": "pricefusion.fusion", "service": "pricefusion",
     "message": "fusion_outliers_filtered", "outliers": ["CoinGecko"]}

Records with a ``to_dict()`` method (AggregatedPrice, BiasPrediction,
PipelineResult) are logged as their dict form.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, TextIO

import orjson

SERVICE_NAME = "pricefusion"

# Attributes every LogRecord carries; anything else came from ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

# Third-party loggers kept at WARNING regardless of LOG_LEVEL
QUIET_LOGGERS = ("asyncio", "uvicorn", "uvicorn.access", "uvicorn.error", "httpx")


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if hasattr(value, "to_dict"):
        return _jsonable(value.to_dict())
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


class JsonFormatter(logging.Formatter):
    """Render a LogRecord as a single JSON line."""

    def __init__(self, static_fields: Optional[Mapping[str, Any]] = None):
        super().__init__()
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            **self.static_fields,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            entry[key] = _jsonable(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(entry).decode("utf-8")


class JsonLogHandler(logging.StreamHandler):
    """StreamHandler (stdout unless told otherwise) with the JSON formatter attached."""

    def __init__(self, stream: Optional[TextIO] = None, service: str = SERVICE_NAME):
        super().__init__(stream=stream if stream is not None else sys.stdout)
        self.setFormatter(JsonFormatter({"service": service}))


def setup_logging(log_level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """
    Route all logging through one JSON handler, on stdout by default.

    Existing root handlers are removed. Unknown level names fall back to INFO.
    Commands that print results on stdout pass sys.stderr here.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    handler = JsonLogHandler(stream)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
