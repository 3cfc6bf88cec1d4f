from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from leadscope.context import get_correlation_id


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
KNOWN_FIELDS = frozenset(
    {
        "actor_id",
        "role",
        "collection",
        "lead_id",
        "user_id",
        "branch_id",
        "transition",
        "hidden_count",
        "cascade_id",
        "field",
        "status",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _field_value(value: Any) -> Any:
    # id sets are reduced to their size so scoped ids never reach the log stream
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value)
    return value


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record; extras outside the whitelist are dropped."""

    def __init__(self, fields: Iterable[str] = KNOWN_FIELDS) -> None:
        super().__init__()
        self.fields = frozenset(fields)

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _BASE_RECORD_KEYS or key not in self.fields:
                continue
            extras[key] = _field_value(value)

        if isinstance(extras.get("error"), str):
            extras["error"] = extras["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            extras["exception"] = self.formatException(record.exc_info)

        payload["fields"] = extras
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadscope_configured", False):
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(resolved)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._leadscope_configured = True  # type: ignore[attr-defined]
