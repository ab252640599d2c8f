import json
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# Vietnamese mobile numbers, with or without the +84 prefix
PHONE_RE = re.compile(r"(?<!\d)(?:\+?84|0)(?:3|5|7|8|9)\d{8}(?!\d)")
CARD_RE = re.compile(r"\b(?:\d[ -]?){13,19}\b")
SECRET_KEYS = {
    "authorization",
    "signature",
    "stripe_signature",
    "x_checksum",
    "vnp_securehash",
    "api_key",
    "secret",
}
PII_KEYS = {"phone", "email", "address", "id_card_number", "driver_license"}


def redact_text(value: str) -> str:
    value = EMAIL_RE.sub("[REDACTED_EMAIL]", value)
    value = CARD_RE.sub("[REDACTED_CARD]", value)
    value = PHONE_RE.sub("[REDACTED_PHONE]", value)
    return value


def _scrub(value: Any, key: str | None = None) -> Any:
    if key:
        lowered = key.lower().replace("-", "_")
        if lowered in SECRET_KEYS or lowered in PII_KEYS:
            return "[REDACTED]"
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    if isinstance(value, dict):
        return {item_key: _scrub(item_value, item_key) for item_key, item_value in value.items()}
    return value


class RedactingJsonFormatter(logging.Formatter):
    """One JSON object per line; structured fields come from ``extra={"extra": {...}}``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "event": redact_text(str(record.getMessage())),
            "logger": record.name,
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            payload.update(_scrub(fields))
        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
