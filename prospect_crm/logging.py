from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from prospect_crm.context import get_correlation_id
from prospect_crm.core.config import get_settings


# Extras that make it into the JSON "fields" object; anything else passed via
# ``extra=`` stays out of the log line.
LOGGED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "user_id",
    "customer_id",
    "category_id",
    "row_count",
    "imported_count",
    "error_count",
    "action",
    "requested",
    "succeeded",
    "format",
    "error",
)
MAX_ERROR_LENGTH = 500

_configured = False
_base_record_factory = logging.getLogRecordFactory()


def _attach_correlation_id(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _attach_correlation_id(_base_record_factory(*args, **kwargs))


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _attach_correlation_id(record)
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, correlation id and known fields."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {name: getattr(record, name) for name in LOGGED_FIELDS if hasattr(record, name)}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging() -> None:
    global _configured

    if _configured:
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    _configured = True
