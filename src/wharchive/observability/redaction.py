"""Redaction helpers for safe logging.

Message bodies, phone numbers and WhatsApp JIDs are PII: everything that comes
from the gateway passes through these helpers before it reaches a log line.
"""

import re
from datetime import datetime
from typing import Any

# Patterns that should never appear in logs
_JID_PATTERN = re.compile(r"[\w.+-]+@(?:s\.whatsapp\.net|g\.us|c\.us|lid|broadcast)")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact PII patterns from a string."""
    result = _JID_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        # For dicts, only log keys (structure), never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    # Enums and other objects: only the type name
    return f"<{type(value).__name__}>"


def id_prefix(value: str | None, length: int = 8) -> str:
    """Short prefix of an external identifier, for correlating log lines."""
    if not value:
        return ""
    return value[:length]


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
