"""Incremental ``data:`` line wire format shared by the relay and the client."""

from __future__ import annotations

import codecs
import json
import re
from typing import Any

SSE_CONTENT_TYPE = "text/event-stream"
DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

DONE_FRAME = f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"
HEARTBEAT_FRAME = 'data: {"__hb":1}\n\n'

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "Access-Control-Allow-Headers": "Cache-Control",
    "X-Accel-Buffering": "no",
}

_LINE_BREAK = re.compile(r"\r?\n")


def is_sse_content_type(content_type: str | None) -> bool:
    return SSE_CONTENT_TYPE in (content_type or "")


def format_frame(payload: Any) -> str:
    if isinstance(payload, str):
        return f"{DATA_PREFIX}{payload}\n\n"
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n"


def data_payload(line: str) -> str | None:
    """Payload of a ``data: `` line, or None for any other line."""
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX) :].strip()


def upstream_delta(parsed: Any) -> str:
    """Text delta carried by one upstream frame; empty when the frame has none."""
    if not isinstance(parsed, dict):
        return ""
    choices = parsed.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        delta = first.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""
    if parsed.get("type") == "content_block_delta":
        delta = parsed.get("delta") or {}
        text = delta.get("text") if isinstance(delta, dict) else None
        return text if isinstance(text, str) else ""
    return ""


class LineBuffer:
    """Decodes byte chunks and yields complete lines.

    Multi-byte sequences split across chunks and lines split across chunks
    are both carried over to the next ``feed``.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        lines = _LINE_BREAK.split(self._pending)
        self._pending = lines.pop()
        return lines

    def flush(self) -> list[str]:
        """Lines still held once the byte stream has ended."""
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        return [line for line in _LINE_BREAK.split(rest) if line]

    def clear(self) -> None:
        self._pending = ""
