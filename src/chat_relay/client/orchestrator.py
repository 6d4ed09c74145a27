from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from chat_relay.client.cancellation import CancellationToken
from chat_relay.client.stream_reader import is_sse_response, read_stream
from chat_relay.error_utils import (
    extract_error_from_response,
    extract_useful_error,
    sanitize_error_message,
    safe_json,
)


@dataclass
class StreamingRequestResult:
    streamed_content: str
    was_streaming: bool
    was_aborted: bool
    token: CancellationToken


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


async def perform_streaming_request(
    client: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    *,
    on_stream_chunk: Callable[[str], None],
    on_non_stream_result: Callable[[Any], None],
    on_error: Callable[[str], None],
    on_complete: Callable[[], Any] | None = None,
    on_abort: Callable[[], None] | None = None,
    on_partial_stream_error: Callable[[BaseException], None] | None = None,
    stream: bool = True,
    token: CancellationToken | None = None,
) -> StreamingRequestResult:
    """POST ``body`` to the relay and drive the response through the callbacks.

    A relay that answers with an event stream is consumed incrementally and
    every accumulated snapshot goes to ``on_stream_chunk``. Anything else is
    read whole and handed to ``on_non_stream_result``. Pass ``token`` (or use
    the one on the result) to cancel; the request runs in its own task so a
    cancel also interrupts a request whose headers are still in flight.
    """
    token = token or CancellationToken()
    accumulated = ""

    def on_content(snapshot: str, _delta: str) -> None:
        nonlocal accumulated
        accumulated = snapshot
        on_stream_chunk(snapshot)

    def result(*, aborted: bool = False) -> StreamingRequestResult:
        return StreamingRequestResult(
            streamed_content=accumulated,
            was_streaming=stream,
            was_aborted=aborted,
            token=token,
        )

    async def exchange() -> StreamingRequestResult:
        request = client.build_request("POST", url, json={**body, "stream": stream})
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as ex:
            on_error(sanitize_error_message(extract_useful_error(str(ex) or "Request failed")))
            return result()

        try:
            incremental = stream and is_sse_response(response)
            if response.is_error and not incremental:
                err_data = await safe_json(response)
                on_error(extract_error_from_response(err_data, response.reason_phrase))
                return result()

            if incremental:
                try:
                    await read_stream(response.aiter_bytes(), on_content)
                    if on_complete is not None:
                        await _maybe_await(on_complete())
                except Exception as ex:
                    if accumulated:
                        if on_partial_stream_error is not None:
                            on_partial_stream_error(ex)
                        else:
                            logger.warning(f"Stream ended early after partial content: {ex}")
                    else:
                        on_error(sanitize_error_message(extract_useful_error(str(ex) or "Streaming error")))
                return result()

            try:
                data = await safe_json(response)
                on_non_stream_result(data)
                if on_complete is not None:
                    await _maybe_await(on_complete())
            except Exception as ex:
                logger.error(f"Failed to handle response: {ex}")
                on_error("Failed to get response from AI")
            return result()
        finally:
            await response.aclose()

    task = asyncio.ensure_future(exchange())
    token.bind(task)
    try:
        return await task
    except asyncio.CancelledError:
        if not token.cancelled:
            raise
        logger.info("Streaming request cancelled by caller")
        if on_abort is not None:
            on_abort()
        return result(aborted=True)
    finally:
        token.clear()
