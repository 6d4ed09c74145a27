from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from fastapi.responses import JSONResponse, Response
from loguru import logger

from chat_relay.api_errors import NotFound, UpstreamAborted, upstream_error_response
from chat_relay.app_config import AppConfig, RuntimeEnv
from chat_relay.cache import TTLCache
from chat_relay.error_utils import sanitize_error_message
from chat_relay.memory import EventEmitter, SessionManager
from chat_relay.memory.events import RELAY_FINISHED, TURN_ROLLED_BACK
from chat_relay.provider import AIConfig
from chat_relay.relay import (
    DownstreamChannel,
    RelayPersistence,
    RelayState,
    RelayTasks,
    StreamRelay,
    StreamSessionState,
)
from chat_relay.services.context import (
    history_turns,
    is_continuation_placeholder,
    prepare_context,
    resolve_config,
    resolve_max_tokens,
)
from chat_relay.services.responses import ChannelStreamingResponse
from chat_relay.upstream import WholeResponse, build_request_body, call_upstream, whole_content


@dataclass
class ChatRequest:
    session_id: str | None = None
    user_message: str | None = None
    stream: bool = True
    temperature: float | None = None
    max_tokens: Any = None
    retry: bool = False


class ChatPersistence(RelayPersistence):
    """Saves assistant output for one chat request and undoes its speculative user turn.

    Both side effects are guarded so each happens at most once per request,
    whichever of the disconnect handler or the finalizer gets there first.
    """

    def __init__(
        self,
        sessions: SessionManager,
        events: EventEmitter,
        session_id: str,
        *,
        user_message: str | None,
        created_user_turn_id: str | None,
    ):
        self._sessions = sessions
        self._events = events
        self._session_id = session_id
        self._user_message = user_message
        self._created_user_turn_id = created_user_turn_id

    @property
    def appends_to_previous(self) -> bool:
        return not self._user_message or is_continuation_placeholder(self._user_message)

    async def save_assistant_message(self, content: str) -> None:
        # Decided against the latest stored turn, not the state at request start.
        latest = await self._sessions.latest_turn(self._session_id)
        if latest is not None and latest.role == "assistant" and self.appends_to_previous:
            logger.info("[Append] Appending to previous assistant message")
            await self._sessions.append_to_turn(latest.id, content)
        else:
            await self._sessions.append_turn(self._session_id, "assistant", content)
        await self._sessions.touch_session(self._session_id)

    async def save_once(self, state: StreamSessionState, reason: str) -> None:
        if state.partial_save_initiated or state.message_saved or not state.has_content:
            return
        state.partial_save_initiated = True
        preview = state.assistant_text[:100]
        logger.info(f"[Partial] Saving message due to {reason}: {preview}...")
        try:
            await self.save_assistant_message(state.assistant_text)
            state.message_saved = True
        except Exception as ex:
            logger.error(f"[Partial] Error saving message: {ex}")

    async def rollback_once(self, state: StreamSessionState, label: str) -> None:
        if state.rolled_back or state.has_content or self._created_user_turn_id is None:
            return
        turn_id = self._created_user_turn_id
        state.rolled_back = True
        self._created_user_turn_id = None
        try:
            deleted = await self._sessions.delete_turn(turn_id)
        except Exception as ex:
            logger.error(f"[Rollback] Failed to delete user message {turn_id} ({label}): {ex}")
            return
        if deleted:
            logger.info(f"[Rollback] Deleted user message {turn_id} ({label}, no assistant content)")
            self._events.emit(self._session_id, TURN_ROLLED_BACK, {"turn_id": turn_id, "reason": label})
        else:
            logger.info(f"[Rollback] User message {turn_id} already absent ({label})")

    async def on_disconnect(self, state: StreamSessionState, reason: str) -> None:
        await self.save_once(state, reason)
        await self.rollback_once(state, f"early {reason}")

    async def on_finish(self, state: StreamSessionState, channel: DownstreamChannel) -> None:
        if state.has_content:
            reason = "completion" if state.stream_completed_naturally else state.phase.value
            await self.save_once(state, reason)
        else:
            if state.stream_completed_naturally:
                logger.warning("[Stream] Completed normally but assistantText was empty; nothing to save")
            await self.rollback_once(state, "finalize")
        self._events.emit(
            self._session_id,
            RELAY_FINISHED,
            {
                "phase": state.phase.value,
                "saved": state.message_saved,
                "rolled_back": state.rolled_back,
                "chars": len(state.assistant_text),
            },
        )


class ChatService:
    def __init__(
        self,
        sessions: SessionManager,
        events: EventEmitter,
        app: AppConfig,
        env: RuntimeEnv,
        http: httpx.AsyncClient,
        tasks: RelayTasks,
        config_cache: TTLCache[AIConfig] | None = None,
    ):
        self._sessions = sessions
        self._events = events
        self._app = app
        self._env = env
        self._http = http
        self._tasks = tasks
        self._config_cache = config_cache

    async def handle(self, request: ChatRequest) -> Response:
        cfg = resolve_config(self._app, self._env, self._config_cache)

        session_id = request.session_id
        if not session_id:
            session_id = await self._sessions.create_session()
        session = await self._sessions.get_session(session_id)
        if session is None:
            raise NotFound("Session not found", "SESSION_NOT_FOUND")

        user_message = request.user_message
        continuation = is_continuation_placeholder(user_message)
        created_user_turn_id: str | None = None
        if user_message and not continuation and not request.retry:
            created = await self._sessions.append_turn(session_id, "user", user_message)
            created_user_turn_id = created.id

        history = history_turns(await self._sessions.load_turns(session_id))
        logger.info(f"[History] Loaded full history: {len(history)} messages for session {session_id}")
        context = prepare_context(
            history,
            base_prompt=self._app.system_prompt,
            summary=session.summary,
            truncation_limit=cfg.truncation_limit,
            continuation=user_message if continuation else None,
        )

        temperature = request.temperature if request.temperature is not None else cfg.temperature
        body = build_request_body(
            cfg,
            context.messages,
            stream=request.stream,
            temperature=temperature,
            max_tokens=resolve_max_tokens(request.max_tokens, cfg.max_tokens),
        )
        try:
            await self._sessions.record_api_request(session_id, {**body, "__meta": context.meta()})
        except Exception as ex:
            logger.error(f"Failed to persist lastApiRequest: {ex}")

        persistence = ChatPersistence(
            self._sessions,
            self._events,
            session_id,
            user_message=user_message,
            created_user_turn_id=created_user_turn_id,
        )
        state = StreamSessionState(phase=RelayState.UPSTREAM_CALLING)
        try:
            upstream = await call_upstream(
                self._http,
                cfg.url,
                cfg.api_key,
                body,
                timeout_seconds=self._app.stream_timeout_ms / 1000,
            )
        except UpstreamAborted:
            state.phase = RelayState.ERRORED
            await persistence.rollback_once(state, "upstream aborted")
            raise

        if isinstance(upstream, WholeResponse):
            state.phase = RelayState.UPSTREAM_NON_STREAM
            return await self._finish_whole(session_id, upstream, persistence, state)

        state.phase = RelayState.UPSTREAM_SSE
        channel = DownstreamChannel()
        relay = StreamRelay(
            upstream,
            channel,
            persistence,
            lambda snapshot: self._sessions.record_api_response(session_id, snapshot),
            state=state,
            label="Stream",
            heartbeat_interval=self._app.heartbeat_interval_ms / 1000,
            checkpoint_interval=self._app.checkpoint_interval_ms / 1000,
            checkpoint_frame_limit=self._app.checkpoint_frame_limit,
            debug_capture=self._app.debug_capture,
        )
        self._tasks.spawn(relay.run(), name=f"chat-relay-{session_id}")
        return ChannelStreamingResponse(channel)

    async def _finish_whole(
        self,
        session_id: str,
        upstream: WholeResponse,
        persistence: ChatPersistence,
        state: StreamSessionState,
    ) -> Response:
        if self._app.debug_capture:
            logger.debug(f"[Upstream][non-stream] Raw body: {upstream.raw_text}")
        try:
            await self._sessions.record_api_response(session_id, upstream.snapshot())
        except Exception as ex:
            logger.error(f"Failed to persist lastApiResponse (non-stream): {ex}")

        if upstream.is_error:
            message = sanitize_error_message(upstream.error_message())
            logger.warning(f"[Stream] Stream did not complete: {upstream.status} {message}")
            await persistence.rollback_once(state, "upstream error")
            return upstream_error_response(upstream.status, upstream.error_payload(), message)

        content = whole_content(upstream.data)
        if content:
            await persistence.save_assistant_message(content)
            state.message_saved = True
        elif "error" in upstream.data:
            logger.error(f"[Upstream][non-stream] Error payload: {upstream.data['error']}")
        elif not upstream.parsed:
            logger.warning("[Upstream][non-stream] Non-JSON/unknown payload captured.")
        if not content:
            await persistence.rollback_once(state, "no content")

        if upstream.parsed:
            return JSONResponse(upstream.data, status_code=upstream.status)
        return Response(upstream.raw_text, status_code=upstream.status, media_type="application/json")
