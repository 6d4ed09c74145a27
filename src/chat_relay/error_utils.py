"""Turn raw upstream/transport errors into short, secret-free user messages."""

from __future__ import annotations

import json
import re
from typing import Any

import httpx
from loguru import logger

from chat_relay.redact import redact_string

STREAM_INTERRUPTED_MESSAGE = "The AI stream was interrupted. Partial response was saved if available."

_LEADING_TAG = re.compile(r"^\[[^\]]+\]\s*")
_INPUT_STREAM = re.compile(r"input\s*stream", re.IGNORECASE)
_AUTH_FAILS = re.compile(r"Authentication Fails.*$", re.IGNORECASE | re.DOTALL)
_API_KEY = re.compile(r"(api\s*key\s*:\s*)(\S+)", re.IGNORECASE)

_KEEP_TAIL = 4


def extract_useful_error(raw: str | None) -> str:
    if not raw:
        return ""
    msg = _LEADING_TAG.sub("", raw.strip(), count=1)
    if _INPUT_STREAM.search(msg):
        return STREAM_INTERRUPTED_MESSAGE
    auth = _AUTH_FAILS.search(msg)
    if auth:
        return auth.group(0).strip()
    idx = msg.rfind(":")
    if idx != -1 and idx + 1 < len(msg):
        return msg[idx + 1 :].strip()
    return msg


def _mask_key(match: re.Match[str]) -> str:
    key = match.group(2)
    if len(key) <= _KEEP_TAIL:
        masked = "****"
    else:
        masked = "*" * (len(key) - _KEEP_TAIL) + key[-_KEEP_TAIL:]
    return f"{match.group(1)}{masked}"


def sanitize_error_message(msg: str | None) -> str:
    """Mask the value following ``api key:`` except its last four characters."""
    if not msg:
        return ""
    try:
        return _API_KEY.sub(_mask_key, msg)
    except Exception as ex:
        logger.debug(f"Error sanitizing message: {ex}")
        return msg


def sanitize_payload(value: Any) -> Any:
    """Copy of a decoded upstream body with every string leaf masked."""
    if isinstance(value, str):
        return redact_string(sanitize_error_message(value))
    if isinstance(value, dict):
        return {key: sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    return value


def extract_error_from_response(err_data: Any, status_text: str | None = None) -> str:
    raw: Any = None
    if isinstance(err_data, dict):
        error = err_data.get("error")
        if isinstance(error, dict):
            nested = error.get("message")
        else:
            nested = None
        raw = err_data.get("__rawText") or nested or (error if isinstance(error, str) else None)
    raw = raw or status_text or "Unknown error"
    return sanitize_error_message(extract_useful_error(str(raw)))


def parse_body_text(raw_text: str) -> dict[str, Any]:
    """Structured body when ``raw_text`` is a JSON object, else ``{"__rawText": raw_text}``."""
    try:
        parsed = json.loads(raw_text)
    except ValueError:
        return {"__rawText": raw_text}
    if isinstance(parsed, dict):
        return parsed
    return {"__rawText": raw_text}


async def safe_json(response: httpx.Response) -> dict[str, Any]:
    """Read and parse a response body without ever raising."""
    try:
        await response.aread()
    except (httpx.HTTPError, RuntimeError) as ex:
        logger.debug(f"Failed to read response body: {ex}")
        return {"__parseError": True}
    try:
        parsed = response.json()
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass
    try:
        return {"__rawText": response.text}
    except (UnicodeDecodeError, LookupError):
        return {"__parseError": True}
