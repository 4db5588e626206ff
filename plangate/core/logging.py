"""
Structured logging for plangate.

Records go through one handler on the "plangate" logger: JSON lines in
production, a single readable line elsewhere. The current request id and any
fields passed through `log_event` (account, event type, error code) ride on the
record as attributes so both formats can render them.

Operator-facing failures are emitted on the "plangate.alerts" child logger.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "plangate"
ALERTS_LOGGER = f"{LOGGER_NAME}.alerts"

FIELD_LIMIT = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_BUILTIN_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    return request_id_ctx_var.get() or default


def clip(value: Any, limit: int = FIELD_LIMIT) -> str:
    """Render a field value as text no longer than `limit` (plus a marker)."""
    try:
        text = str(value)
    except Exception:
        return "<unrepresentable>"
    if len(text) > limit:
        return f"{text[:limit]}...<truncated>"
    return text


def record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached through `extra`, minus the ones logging sets itself."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _BUILTIN_ATTRS and value is not None
    }


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        body: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = getattr(record, "request_id", None)
        if rid:
            body["request_id"] = rid
        body.update(record_fields(record))
        if record.exc_info:
            body["exception"] = self.formatException(record.exc_info)
        return json.dumps(body, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S"),
            f"{record.levelname:<7}",
            record.getMessage(),
        ]
        parts.extend(f"{key}={value}" for key, value in record_fields(record).items())
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"(rid={rid})")
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Install the plangate handler. Safe to call more than once."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    logger.handlers = [handler]

    # Alerts bubble up to the plangate handler; never silence them
    logging.getLogger(ALERTS_LOGGER).setLevel(logging.WARNING)


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    account_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    logger_name: str = LOGGER_NAME,
    exc_info: bool = False,
) -> None:
    """Log `msg` with the usual billing/quota fields attached."""
    if not logging.getLogger(LOGGER_NAME).handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "account_id": account_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = clip(value)

    logging.getLogger(logger_name).log(
        logging.getLevelName(level.upper()),
        msg,
        extra={key: value for key, value in fields.items() if value is not None},
        exc_info=exc_info,
    )
