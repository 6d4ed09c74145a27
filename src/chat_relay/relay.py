"""Server-side relay from an upstream event stream to a downstream client.

The relay runs in its own task and writes frames into a
:class:`DownstreamChannel`; the HTTP layer drains that channel. When the
client goes away the channel reports a disconnect and the relay stops its
heartbeat, aborts the upstream read and lets its persistence strategy decide
what to keep.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from loguru import logger

from chat_relay.sse import (
    DONE_FRAME,
    DONE_SENTINEL,
    HEARTBEAT_FRAME,
    LineBuffer,
    data_payload,
    format_frame,
    upstream_delta,
)
from chat_relay.upstream import IncrementalResponse


class RelayState(str, Enum):
    INIT = "init"
    UPSTREAM_CALLING = "upstream_calling"
    UPSTREAM_NON_STREAM = "upstream_non_stream"
    UPSTREAM_SSE = "upstream_sse"
    RELAYING = "relaying"
    COMPLETED = "completed"
    DISCONNECTED = "disconnected"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    FINALIZED = "finalized"


_BEFORE_COMPLETION = {
    RelayState.INIT,
    RelayState.UPSTREAM_CALLING,
    RelayState.UPSTREAM_SSE,
    RelayState.RELAYING,
}


@dataclass
class StreamSessionState:
    """Per-request bookkeeping; lives only as long as one relay call."""

    phase: RelayState = RelayState.INIT
    assistant_text: str = ""
    frames: list[str] = field(default_factory=list)
    client_disconnected: bool = False
    stream_completed_naturally: bool = False
    done_emitted: bool = False
    partial_save_initiated: bool = False
    message_saved: bool = False
    rolled_back: bool = False
    chunks: int = 0
    bytes_received: int = 0

    @property
    def has_content(self) -> bool:
        return bool(self.assistant_text.strip())

    def snapshot(
        self,
        status: int,
        headers: dict[str, str],
        *,
        frame_limit: int | None = None,
        completed: bool | None = None,
    ) -> dict[str, Any]:
        frames = self.frames[-frame_limit:] if frame_limit else list(self.frames)
        if completed is None:
            completed = self.stream_completed_naturally and not self.client_disconnected
        return {
            "mode": "sse",
            "upstreamStatus": status,
            "headers": headers,
            "frames": frames,
            "completed": completed,
            "assistantText": self.assistant_text,
        }


class DownstreamChannel:
    """Ordered frame queue between the relay task and the HTTP response body."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._disconnected = False
        self._closed = False
        self._handlers: list[Callable[[str], None]] = []

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def writable(self) -> bool:
        return not self._disconnected and not self._closed

    def write(self, frame: str) -> bool:
        if not self.writable:
            return False
        self._queue.put_nowait(frame)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def on_disconnect(self, handler: Callable[[str], None]) -> None:
        self._handlers.append(handler)
        if self._disconnected:
            handler("client disconnect")

    def mark_disconnected(self, reason: str = "client disconnect") -> None:
        if self._disconnected or self._closed:
            return
        self._disconnected = True
        for handler in list(self._handlers):
            handler(reason)

    async def frames(self) -> AsyncIterator[str]:
        """Body iterator for the streaming response."""
        finished = False
        try:
            while True:
                item = await self._queue.get()
                if item is self._CLOSED:
                    finished = True
                    return
                yield item
        finally:
            if not finished:
                self.mark_disconnected("client disconnect")


class RelayPersistence:
    """What a relay keeps, and tells the client, once it stops."""

    def connected_payload(self) -> dict[str, Any]:
        return {"status": "connected"}

    async def on_disconnect(self, state: StreamSessionState, reason: str) -> None:
        return None

    async def on_finish(self, state: StreamSessionState, channel: DownstreamChannel) -> None:
        return None


SnapshotWriter = Callable[[dict[str, Any]], Awaitable[None]]


class StreamRelay:
    def __init__(
        self,
        upstream: IncrementalResponse,
        channel: DownstreamChannel,
        persistence: RelayPersistence,
        record_response: SnapshotWriter,
        *,
        state: StreamSessionState | None = None,
        label: str = "Stream",
        heartbeat_interval: float = 10.0,
        checkpoint_interval: float = 1.5,
        checkpoint_frame_limit: int = 100,
        debug_capture: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._upstream = upstream
        self._channel = channel
        self._persistence = persistence
        self._record_response = record_response
        self.state = state or StreamSessionState()
        self._label = label
        self._heartbeat_interval = heartbeat_interval
        self._checkpoint_interval = checkpoint_interval
        self._checkpoint_frame_limit = checkpoint_frame_limit
        self._capture: list[str] | None = [] if debug_capture else None
        self._clock = clock
        self._last_checkpoint = clock()
        self._heartbeat_task: asyncio.Task | None = None
        self._read_task: asyncio.Task | None = None
        self._disconnect_task: asyncio.Task | None = None

    def _transition(self, phase: RelayState) -> None:
        previous = self.state.phase
        self.state.phase = phase
        if previous is RelayState.RELAYING and phase is not RelayState.RELAYING:
            self._stop_heartbeat()

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self.state.phase is not RelayState.RELAYING or not self._channel.writable:
                return
            self._channel.write(HEARTBEAT_FRAME)

    def _handle_disconnect(self, reason: str) -> None:
        if self.state.phase not in _BEFORE_COMPLETION or self.state.client_disconnected:
            return
        logger.info(f"[{self._label}] {reason} during streaming")
        self.state.client_disconnected = True
        self._stop_heartbeat()
        if self._read_task is not None and not self._read_task.done():
            logger.info(f"[{self._label}] Aborting upstream fetch: {reason}")
            self._read_task.cancel()
        self._disconnect_task = asyncio.ensure_future(self._persistence.on_disconnect(self.state, reason))

    async def run(self) -> StreamSessionState:
        state = self.state
        self._transition(RelayState.RELAYING)
        self._channel.write(format_frame(self._persistence.connected_payload()))
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat())
        self._read_task = asyncio.ensure_future(self._pump())
        self._channel.on_disconnect(self._handle_disconnect)

        try:
            await self._read_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not state.client_disconnected or (current is not None and current.cancelling()):
                raise
        except httpx.TimeoutException:
            logger.warning(f"[Timeout] Upstream stream went idle; aborting after {len(state.assistant_text)} chars")
            self._transition(RelayState.TIMED_OUT)
        except Exception as ex:
            logger.error(f"[{self._label}] Streaming error: {type(ex).__name__}: {ex}")
            self._transition(RelayState.ERRORED)
        finally:
            self._stop_heartbeat()
            await self._upstream.aclose()

        if state.client_disconnected:
            self._transition(RelayState.DISCONNECTED)
            logger.info(
                f"[{self._label}] Stream stopped due to client disconnect. "
                f"chunks={state.chunks} bytes={state.bytes_received} assistantLen={len(state.assistant_text)}"
            )
        elif state.phase is RelayState.RELAYING:
            state.stream_completed_naturally = True
            self._transition(RelayState.COMPLETED)
            logger.info(
                f"[{self._label}] Completed normally. "
                f"chunks={state.chunks} bytes={state.bytes_received} assistantLen={len(state.assistant_text)}"
            )
        if self._capture:
            logger.debug(f"[{self._label}][Capture] First 20 frames: {self._capture[:20]}")
            if len(self._capture) > 20:
                logger.debug(f"[{self._label}][Capture] Total frames: {len(self._capture)}")

        if self._disconnect_task is not None:
            try:
                await self._disconnect_task
            except Exception as ex:
                logger.error(f"[{self._label}] Disconnect handling failed: {ex}")
        try:
            await self._persistence.on_finish(state, self._channel)
        finally:
            await self._write_final_snapshot()
            if not state.done_emitted and self._channel.write(DONE_FRAME):
                state.done_emitted = True
            self._channel.close()
            self._transition(RelayState.FINALIZED)
        return state

    async def _pump(self) -> None:
        state = self.state
        buffer = LineBuffer()
        async for chunk in self._upstream.aiter_bytes():
            if not self._channel.writable:
                logger.info(f"[{self._label}] Client disconnected, stopping stream processing")
                return
            state.chunks += 1
            state.bytes_received += len(chunk)
            for line in buffer.feed(chunk):
                if await self._handle_line(line) or not self._channel.writable:
                    buffer.clear()
                    return
        for line in buffer.flush():
            if await self._handle_line(line):
                return

    async def _handle_line(self, line: str) -> bool:
        """Process one upstream line; True once the stream's terminal sentinel arrives."""
        payload = data_payload(line)
        if payload is None:
            return False
        if self._capture is not None:
            self._capture.append(payload)

        if payload == DONE_SENTINEL:
            self._stop_heartbeat()
            if self._channel.write(DONE_FRAME):
                self.state.done_emitted = True
            return True

        try:
            parsed = json.loads(payload)
        except ValueError:
            return False

        self.state.frames.append(payload)
        delta = upstream_delta(parsed)
        if not delta:
            if self._capture is not None:
                logger.debug(f"[{self._label}][Upstream] Non-content frame: {payload}")
            return False

        self.state.assistant_text += delta
        await self._maybe_checkpoint()
        self._channel.write(format_frame({"content": delta}))
        return False

    async def _maybe_checkpoint(self) -> None:
        now = self._clock()
        if now - self._last_checkpoint <= self._checkpoint_interval:
            return
        self._last_checkpoint = now
        snapshot = self.state.snapshot(
            self._upstream.status,
            self._upstream.headers,
            frame_limit=self._checkpoint_frame_limit,
            completed=False,
        )
        try:
            await self._record_response(snapshot)
        except Exception as ex:
            logger.warning(f"[{self._label}] Checkpoint persistence failed: {ex}")

    async def _write_final_snapshot(self) -> None:
        snapshot = self.state.snapshot(self._upstream.status, self._upstream.headers)
        try:
            await self._record_response(snapshot)
        except Exception as ex:
            logger.error(f"[{self._label}] Failed to persist last API response: {ex}")


class RelayTasks:
    """Keeps relay tasks referenced until they finish; awaited on shutdown."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logger.opt(exception=ex).error(f"Relay task {task.get_name()} failed: {ex}")

    def __len__(self) -> int:
        return len(self._tasks)

    async def aclose(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
