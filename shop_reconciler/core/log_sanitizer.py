import re
from typing import Any

REDACTED = "[REDACTED]"
REDACTED_EMAIL = "[REDACTED_EMAIL]"
REDACTED_PHONE = "[REDACTED_PHONE]"
TRUNCATED = "[TRUNCATED]"

MAX_DEPTH = 6
MAX_STRING_LENGTH = 240
MAX_LIST_ITEMS = 50

_SENSITIVE_KEY_RE = re.compile(
    r"recipient|shipping_?address|address|phone|email|comment|full_?name"
    r"|token|secret|password|signature|authorization|cookie|x[-_]?sign"
    r"|api_?key|card|cvc|iban",
    re.IGNORECASE,
)
_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_PHONE_RE = re.compile(r"(?<!\d)(?:\+380\d{9}|0\d{9}|\+\d{10,14})(?!\d)")


def _sanitize_string(value: str) -> str:
    value = _EMAIL_RE.sub(REDACTED_EMAIL, value)
    value = _PHONE_RE.sub(REDACTED_PHONE, value)
    if len(value) > MAX_STRING_LENGTH:
        value = value[:MAX_STRING_LENGTH] + "..."
    return value


def sanitize_log_meta(value: Any, _depth: int = 0) -> Any:
    if _depth > MAX_DEPTH:
        return TRUNCATED

    if isinstance(value, dict):
        return {
            str(key): (
                REDACTED
                if _SENSITIVE_KEY_RE.search(str(key))
                else sanitize_log_meta(item, _depth + 1)
            )
            for key, item in value.items()
        }

    if isinstance(value, (list, tuple, set)):
        return [sanitize_log_meta(item, _depth + 1) for item in list(value)[:MAX_LIST_ITEMS]]

    if isinstance(value, str):
        return _sanitize_string(value)

    if value is None or isinstance(value, (bool, int, float)):
        return value

    return _sanitize_string(str(value))
