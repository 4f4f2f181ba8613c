"""
Structured logging for the cache layer.

Every component logs through the ``community_cache`` logger tree. Log
lines about one entity kind carry ``kind`` and ``collection`` context
(and ``record_id`` / ``op`` for writes), which the JSON formatter emits
as top-level keys so a log collector can filter on them directly.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

PACKAGE_LOGGER = "community_cache"

# Context keys promoted to top-level JSON fields, in output order
CONTEXT_FIELDS = ("kind", "collection", "record_id", "op")

_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats records as single-line JSON objects.

    Layout:
    - timestamp: time the record was created, ISO 8601 in UTC
    - level, logger, message
    - kind, collection, record_id, op: cache context, omitted when unset
    - extra: any other ``extra`` fields, stringified if not JSON-encodable
    - exception: formatted traceback, when present
    """

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                line[key] = _jsonable(value)

        extra = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
        }
        if extra:
            line["extra"] = extra

        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)

        return json.dumps(line, default=str)


def configure_structured_logging(
    level: int | str = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
) -> logging.Logger:
    """
    Send cache logs to stdout as JSON lines.

    Args:
        level: Logging level, as a number or a name such as ``"DEBUG"``
        logger_name: Logger to configure (default: the package logger,
            pass None for the root logger)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Replace rather than stack handlers when called again
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    return logger


class CacheLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that tags every line with cache context.

    Context given at construction is merged under the call's own
    ``extra``; a key passed at the call site wins. Unset (None) context
    keys are dropped.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = {key: value for key, value in (self.extra or {}).items() if value is not None}
        kwargs["extra"] = {**context, **kwargs.get("extra", {})}
        return msg, kwargs


def get_cache_logger(
    name: str,
    kind: str | None = None,
    collection: str | None = None,
) -> CacheLoggerAdapter:
    """
    Get a context-tagged logger for a cache component.

    Args:
        name: Module name (``__name__``) or a short component name such as
            ``"merger"``, which is placed under the package logger
        kind: Entity kind the component works on
        collection: Remote collection the component talks to

    Returns:
        Adapter over ``community_cache.<component>``
    """
    if name != PACKAGE_LOGGER and not name.startswith(f"{PACKAGE_LOGGER}."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return CacheLoggerAdapter(logging.getLogger(name), {"kind": kind, "collection": collection})
