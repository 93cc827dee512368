"""
Structured logging for the licensing service.

- JSON lines in production, one readable line per record elsewhere.
- request_id bound per request through a ContextVar and added by a filter.
- Account identifiers are masked by log_event; billing keys and activation
  tokens are scrubbed from every message by RedactingFilter.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "licensing"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

STRUCTURED_FIELDS = (
    "identifier",
    "plan",
    "event_type",
    "action",
    "error_code",
    "method",
    "path",
    "status",
    "latency_bucket",
)

# Stripe keys, webhook secrets and 64-hex activation tokens.
_SECRET_PATTERNS = (
    re.compile(r"\b(sk|rk)_(live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"\b[0-9a-f]{64}\b"),
)

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))

# Attributes every LogRecord carries; anything else on a record came from `extra`.
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime", "request_id"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def mask_identifier(identifier: Optional[str]) -> Optional[str]:
    """Mask an account identifier for logs: a***@x.com, gift:1a2b3c4d..."""
    if not identifier:
        return identifier
    if identifier.startswith("gift:"):
        return identifier[:13] + "..."
    local, sep, domain = identifier.partition("@")
    if not sep:
        return identifier[:2] + "***"
    return f"{local[:1]}***@{domain}"


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("[redacted]", text)
    return text


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class RedactingFilter(logging.Filter):
    """Rewrite the rendered message with secrets replaced."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _structured(record: logging.LogRecord) -> Dict[str, Any]:
    """Known fields first, then any other extra passed by the caller (detail, event_id, ...)."""
    fields = {
        field: getattr(record, field)
        for field in STRUCTURED_FIELDS
        if getattr(record, field, None) is not None
    }
    for key in sorted(set(record.__dict__) - _RECORD_ATTRS - fields.keys()):
        value = record.__dict__[key]
        if value is not None:
            fields[key] = value
    return fields


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_structured(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{record.name}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in _structured(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    """Install one stdout handler on the service logger (JSON in production)."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    handler.addFilter(RedactingFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Keep uvicorn's own access/error lines out of the service stream
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _truncate(value: Any, limit: int = 500) -> str:
    try:
        text = redact(str(value))
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    identifier: Optional[str] = None,
    plan: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log an entitlement event with a masked identifier and truncated, redacted extras."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "identifier": mask_identifier(identifier),
        "plan": plan,
    }
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for key, value in (extra or {}).items():
        fields[key] = _truncate(value)

    getattr(logger, level, logger.info)(msg, extra=fields)
