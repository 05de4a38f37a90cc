"""Log setup: redacting text formatter or one-JSON-object-per-line."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

SENSITIVE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"authorization", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
]

REDACTED = "***REDACTED***"

_STANDARD_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message"}


def is_sensitive_key(key: str) -> bool:
    return any(p.search(key) for p in SENSITIVE_PATTERNS)


def redact_dict(data: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in data.items():
        if is_sensitive_key(key):
            result[key] = REDACTED
        elif isinstance(value, dict):
            result[key] = redact_dict(value)
        else:
            result[key] = value
    return result


def redact_string(text: str) -> str:
    # Authorization: Bearer sk_live_xxx
    text = re.sub(
        r"(Bearer\s+)\S+",
        r"\1" + REDACTED,
        text,
        flags=re.IGNORECASE,
    )
    # secret keys as issued by the gateway
    text = re.sub(r"\bsk_(live|test)_\w+", "sk_" + REDACTED, text)
    # password=xxx / token: xxx
    text = re.sub(
        r"((?:password|token)[\s=:]+)\S+",
        r"\1" + REDACTED,
        text,
        flags=re.IGNORECASE,
    )
    return text


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter with sensitive field redaction."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_string(record.getMessage()),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_ATTRS
        }
        if extras:
            entry["extra"] = redact_dict(extras)
        return json.dumps(entry, default=str)


class RedactingFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = None,
                 datefmt: str | None = None) -> None:
        super().__init__(
            fmt=fmt or "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt=datefmt or "%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        return redact_string(super().format(record))


def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    """
    Configure the root logger once at process start.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        log_format: "json" for structured lines, "text" for humans.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(RedactingFormatter())
    root.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
