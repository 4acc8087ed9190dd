from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# Set per HTTP request by the request middleware and per callback by the deletion worker.
correlation_id_ctx_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RESERVED_RECORD_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}

_HTTP_FIELDS = ("path", "method", "status_code", "duration_ms")
_LIFECYCLE_FIELDS = ("account_id", "callback_id", "kind", "outcome", "state")


class CorrelationIdFilter(logging.Filter):
    """Attach the current correlation id (request or callback) to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        record.correlation_id = correlation_id_ctx_var.get() or "-"
        return True


def _truncate_text(value: str) -> str:
    return value[:5000] if len(value) > 5000 else value


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        return _truncate_text(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in list(value.items())[:100]}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in list(value)[:200]]
    try:
        return _truncate_text(str(value))
    except Exception:  # pragma: no cover - defensive
        return "<unserializable>"


def _base_log_record_payload(record: logging.LogRecord) -> dict[str, Any]:
    ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
    return {
        "ts": ts,
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "correlation_id": getattr(record, "correlation_id", "-"),
    }


def _append_known_fields(payload: dict[str, Any], record: logging.LogRecord, fields: tuple[str, ...]) -> None:
    for field in fields:
        value = getattr(record, field, None)
        if value is not None:
            payload[field] = _json_safe(value)


def _append_non_reserved_extras(payload: dict[str, Any], record: logging.LogRecord) -> None:
    extras = getattr(record, "__dict__", {}) or {}
    for key, value in extras.items():
        if key in _RESERVED_RECORD_KEYS or key in payload:
            continue
        if key.startswith("_"):
            continue
        payload[key] = _json_safe(value)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logs; lifecycle fields are hoisted next to the message."""

    def format(self, record: logging.LogRecord) -> str:
        base = _base_log_record_payload(record)
        _append_known_fields(base, record, _LIFECYCLE_FIELDS)
        _append_known_fields(base, record, _HTTP_FIELDS)
        _append_non_reserved_extras(base, record)
        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def configure_logging(json_logs: bool = False) -> None:
    """Configure root logger with a correlation-id aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s [%(correlation_id)s] %(message)s")
        )

    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)
