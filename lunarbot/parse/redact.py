"""Redaction module to mask secrets in persisted error messages and logs."""
import re
from typing import Any, Dict

REDACTED = "[REDACTED]"

SECRET_KEYS = (
    "password",
    "encrypted_password",
    "encrypted_username",
    "card_number",
    "cvv",
    "expiry_date",
    "access_token",
    "refresh_token",
    "cookie",
)

MAX_MESSAGE_LENGTH = 500


def redact_string(text: str) -> str:
    """Redact secrets from a string."""
    if not text:
        return text

    # Patterns to redact
    patterns = [
        (r'(password["\']?\s*[:=]\s*)["\']?[^"\'\s,;}]+["\']?', r'\1"[REDACTED]"'),
        (r'(access_token["\']?\s*[:=]\s*)["\']?[^"\'\s,;}]+["\']?', r'\1"[REDACTED]"'),
        (r'(refresh_token["\']?\s*[:=]\s*)["\']?[^"\'\s,;}]+["\']?', r'\1"[REDACTED]"'),
        (r'Authorization["\']?\s*[:=]\s*["\']?Bearer\s+[^"\'\s]+', r'Authorization: Bearer [REDACTED]'),
        (r'(Cookie:\s*)[^\r\n]+', r'\1[REDACTED]'),
        # Card numbers: 13-19 digits, optionally grouped
        (r'\b(?:\d[ -]?){12,18}\d\b', REDACTED),
        (r'(cvv["\']?\s*[:=]\s*)["\']?\d{3,4}["\']?', r'\1"[REDACTED]"'),
    ]

    result = text
    for pattern, replacement in patterns:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    return result


def redact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively redact secrets from a dictionary."""
    if not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        if key.lower() in SECRET_KEYS:
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_dict(value)
        elif isinstance(value, list):
            redacted[key] = [redact_json(item) for item in value]
        elif isinstance(value, str):
            redacted[key] = redact_string(value)
        else:
            redacted[key] = value

    return redacted


def redact_json(data: Any) -> Any:
    """Redact secrets from JSON-serializable data."""
    if isinstance(data, dict):
        return redact_dict(data)
    elif isinstance(data, list):
        return [redact_json(item) for item in data]
    elif isinstance(data, str):
        return redact_string(data)
    else:
        return data


def user_facing_error(error: BaseException | str) -> str:
    """One-line, redacted, length-limited message safe for user-visible fields."""
    text = str(error).strip()
    if not text and isinstance(error, BaseException):
        text = type(error).__name__
    first_line = text.splitlines()[0] if text else "Unknown error"
    return redact_string(first_line)[:MAX_MESSAGE_LENGTH]
