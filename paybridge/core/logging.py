"""
Structured logging for the billing service.

Records carry the request id from context plus the billing identifiers
passed to log_event (company, subscription, payment intent). Production
emits one JSON object per line; other environments a single readable line.
Processor secrets are masked before anything is written.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "paybridge"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

BILLING_FIELDS = (
    "user_id",
    "company_id",
    "subscription_id",
    "payment_intent_id",
    "event_type",
    "error_code",
)

# API keys, webhook secrets and client secrets
_SECRET_RE = re.compile(r"\b(?:(?:sk|rk)_(?:test|live)_\w+|whsec_\w+|\w+_secret_\w+)")

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BUCKETS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def redact(text: str) -> str:
    return _SECRET_RE.sub("<redacted>", text)


def _clean(value, limit: int = 500) -> str:
    try:
        text = redact(str(value))
    except Exception:
        return "<unserializable>"
    if len(text) > limit:
        return text[:limit] + "...<truncated>"
    return text


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _billing_fields(record: logging.LogRecord) -> Dict[str, object]:
    return {name: getattr(record, name) for name in BILLING_FIELDS if getattr(record, name, None) is not None}


class RequestIdFilter(logging.Filter):
    """Stamp the context request id on records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "request_id": getattr(record, "request_id", None),
            **_billing_fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(redact(record.getMessage()))
        parts.extend(f"{name}={value}" for name, value in _billing_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> None:
    """Install one stdout handler on the service logger.

    `level` falls back to LOG_LEVEL, then INFO.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
    # stripe's own request logging would duplicate gateway errors
    logging.getLogger("stripe").setLevel(logging.WARNING)


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    company_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log a billing event with its identifiers; `extra` values are masked and truncated."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "company_id": company_id,
        "subscription_id": subscription_id,
        "payment_intent_id": payment_intent_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        payload[key] = _clean(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
