from __future__ import annotations

import json
from collections.abc import AsyncIterable, Callable

import httpx

from chat_relay.sse import DONE_SENTINEL, LineBuffer, data_payload, is_sse_content_type

ContentCallback = Callable[[str, str], None]


def is_sse_response(response: httpx.Response) -> bool:
    return is_sse_content_type(response.headers.get("content-type"))


async def read_stream(body: AsyncIterable[bytes], on_content: ContentCallback) -> str:
    """Consume a relay byte stream and return the accumulated content.

    ``on_content(accumulated, delta)`` fires for every frame that carries a
    ``content`` field. Reading stops at ``[DONE]`` or when the stream ends;
    malformed frames are skipped. The underlying iterator is closed on every
    exit path.
    """
    iterator = body.__aiter__()
    buffer = LineBuffer()
    accumulated = ""

    def consume(lines: list[str]) -> bool:
        nonlocal accumulated
        for line in lines:
            payload = data_payload(line)
            if payload is None:
                continue
            if payload == DONE_SENTINEL:
                return True
            try:
                parsed = json.loads(payload)
            except ValueError:
                continue
            content = parsed.get("content") if isinstance(parsed, dict) else None
            if not content or not isinstance(content, str):
                continue
            accumulated += content
            on_content(accumulated, content)
        return False

    try:
        done = False
        async for chunk in iterator:
            if consume(buffer.feed(chunk)):
                done = True
                break
        if not done:
            consume(buffer.flush())
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    return accumulated
