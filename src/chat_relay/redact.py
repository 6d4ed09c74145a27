"""Masking helpers that keep credentials out of log lines and error text."""

from __future__ import annotations

import json
import re
from typing import Any

_REDACTED = "****REDACTED****"

_AUTH_BEARER_PATTERN = re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._\-]+)", re.IGNORECASE)
_API_KEY_PATTERN = re.compile(r"(?:(?:sk|pk|rk|ak)_[A-Za-z0-9]{16,}|[A-Za-z0-9]{24,})")
_DB_URL_PATTERN = re.compile(r"((?:postgres(?:ql)?|mysql|mariadb)://)([^:\n\r@/]+):([^@\n\r]+)@", re.IGNORECASE)


def _mask_token(match: re.Match[str]) -> str:
    token = match.group(0)
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}{_REDACTED}{token[-4:]}"


def redact_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = str(value)
    text = _AUTH_BEARER_PATTERN.sub(lambda m: f"{m.group(1)}{_REDACTED}", text)
    text = _API_KEY_PATTERN.sub(_mask_token, text)
    text = _DB_URL_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}:{_REDACTED}@", text)
    return text


def redact_record(record: dict) -> None:
    """Loguru patcher: rewrites the formatted message in place."""
    record["message"] = redact_string(record["message"])
