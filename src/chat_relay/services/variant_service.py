from __future__ import annotations

from typing import Any

import httpx
from fastapi.responses import JSONResponse, Response
from loguru import logger

from chat_relay.api_errors import (
    BadRequest,
    NotFound,
    UpstreamNoContent,
    VariantVersionConflict,
    VersionAllocationFailed,
    upstream_error_response,
)
from chat_relay.app_config import AppConfig, RuntimeEnv
from chat_relay.cache import TTLCache
from chat_relay.error_utils import sanitize_error_message
from chat_relay.memory import SessionManager, TurnRecord, VariantManager, VariantRecord, VersionAllocator
from chat_relay.provider import AIConfig
from chat_relay.relay import (
    DownstreamChannel,
    RelayPersistence,
    RelayState,
    RelayTasks,
    StreamRelay,
    StreamSessionState,
)
from chat_relay.services.context import history_turns, prepare_context, resolve_config
from chat_relay.services.responses import ChannelStreamingResponse
from chat_relay.sse import format_frame
from chat_relay.upstream import WholeResponse, build_request_body, call_upstream, whole_content

ROLLBACK_STOPPED_VARIANT = "rollback_stopped_variant"


def _not_saved(reason: str, message: str) -> dict[str, Any]:
    return {"status": "variant_not_saved", "reason": reason, "message": message}


class VariantPersistence(RelayPersistence):
    """A streamed variant is stored only when the stream ended on its own with the client still there."""

    def __init__(
        self,
        variants: VariantManager,
        allocator: VersionAllocator,
        session_id: str,
        turn_id: str,
        version: int,
    ):
        self._variants = variants
        self._allocator = allocator
        self._session_id = session_id
        self._turn_id = turn_id
        self._version = version
        self.saved: VariantRecord | None = None

    def connected_payload(self) -> dict[str, Any]:
        return {"status": "connected", "variantId": self._version}

    async def on_disconnect(self, state: StreamSessionState, reason: str) -> None:
        logger.info(f"[Variant] {reason} during variant streaming ({len(state.assistant_text)} chars accumulated)")

    async def on_finish(self, state: StreamSessionState, channel: DownstreamChannel) -> None:
        disconnected = state.client_disconnected or channel.disconnected
        logger.info(
            f"[Variant] Final check before variant decision: clientDisconnected={disconnected}, "
            f"streamCompleted={state.stream_completed_naturally}, contentLength={len(state.assistant_text)}"
        )
        if disconnected:
            logger.info(f"[Variant] Generation stopped by client disconnect. Not saving variant {self._version}")
            channel.write(format_frame(_not_saved("client_disconnected", "Variant generation was stopped and not saved")))
            return

        if not (state.stream_completed_naturally and state.assistant_text):
            logger.info(
                f"[Variant] No variant to save - streamCompleted: {state.stream_completed_naturally}, "
                f"contentLength: {len(state.assistant_text)}"
            )
            channel.write(format_frame(_not_saved("no_content", "No content to save")))
            return

        async def write(version: int) -> VariantRecord:
            return await self._variants.create_variant(self._session_id, self._turn_id, version, state.assistant_text)

        try:
            self.saved = await self._allocator.allocate_and_write(self._turn_id, write, first_version=self._version)
        except (VariantVersionConflict, VersionAllocationFailed):
            channel.write(format_frame(_not_saved("race_condition", "Variant not saved due to race condition")))
            return
        except Exception as ex:
            logger.opt(exception=ex).error(f"[Variant] Error saving variant {self._version}: {ex}")
            channel.write(format_frame(_not_saved("database_error", "Variant not saved due to error")))
            return

        state.message_saved = True
        logger.info(f"[Variant] Successfully saved variant {self.saved.version}")
        channel.write(
            format_frame(
                {"status": "variant_saved", "variantId": self.saved.version, "message": "Variant successfully saved"}
            )
        )


class VariantService:
    def __init__(
        self,
        sessions: SessionManager,
        variants: VariantManager,
        allocator: VersionAllocator,
        app: AppConfig,
        env: RuntimeEnv,
        http: httpx.AsyncClient,
        tasks: RelayTasks,
        config_cache: TTLCache[AIConfig] | None = None,
    ):
        self._sessions = sessions
        self._variants = variants
        self._allocator = allocator
        self._app = app
        self._env = env
        self._http = http
        self._tasks = tasks
        self._config_cache = config_cache

    async def _require_turn(self, turn_id: str) -> TurnRecord:
        turn = await self._sessions.get_turn(turn_id)
        if turn is None:
            raise NotFound("Message not found", "MESSAGE_NOT_FOUND")
        return turn

    async def list_variants(self, turn_id: str) -> list[VariantRecord]:
        return await self._variants.list_variants(turn_id)

    async def latest(self, turn_id: str) -> VariantRecord:
        variant = await self._variants.latest_variant_with_retry(turn_id)
        if variant is None:
            raise NotFound("No variants found for this message", "NO_VARIANTS")
        return variant

    async def update_content(self, turn_id: str, variant_id: str, content: str) -> VariantRecord:
        turn = await self._require_turn(turn_id)
        updated = await self._variants.update_content(turn.session_id, variant_id, content)
        if updated is None:
            raise NotFound("Variant not found", "VARIANT_NOT_FOUND")
        return updated

    async def activate(self, turn_id: str, variant_id: str) -> VariantRecord:
        turn = await self._require_turn(turn_id)
        active = await self._variants.activate(turn.session_id, turn_id, variant_id)
        if active is None:
            raise NotFound("Variant not found", "VARIANT_NOT_FOUND")
        return active

    async def delete_all(self, turn_id: str) -> int:
        turn = await self._require_turn(turn_id)
        return await self._variants.delete_all(turn.session_id, turn_id)

    async def rollback_stopped(self, turn_id: str, action: str | None) -> dict[str, Any]:
        if action != ROLLBACK_STOPPED_VARIANT:
            raise BadRequest("Invalid PATCH action", "INVALID_PATCH_ACTION")
        # Stopped variants are never written, so there is nothing to delete.
        versions = await self._variants.list_variants(turn_id)
        logger.info(f"Rollback request for message {turn_id}: found {len(versions)} existing variants")
        return {
            "variants": [v.to_dict() for v in versions],
            "message": "No rollback needed - stopped variants are not saved to database",
            "action": "rollback_completed",
        }

    async def generate(self, turn_id: str, *, stream: bool = False, temperature: Any = None) -> Response:
        logger.info(f"[Variant] Starting variant generation for message {turn_id}")
        turn = await self._require_turn(turn_id)
        if turn.role != "assistant":
            raise BadRequest("Can only generate variants for assistant messages", "INVALID_MESSAGE_ROLE")

        version = await self._allocator.allocate(turn_id)
        cfg = resolve_config(self._app, self._env, self._config_cache)

        session = await self._sessions.get_session(turn.session_id)
        previous = await self._sessions.load_turns(turn.session_id, before_seq=turn.seq)
        logger.info(f"[Variant] Variant context size (prior messages): {len(previous)}")
        context = prepare_context(
            history_turns(previous),
            base_prompt=self._app.system_prompt,
            summary=session.summary if session else None,
            truncation_limit=cfg.truncation_limit,
            always_placeholder=True,
        )
        body = build_request_body(
            cfg,
            context.messages,
            stream=stream,
            temperature=_requested_temperature(temperature, cfg.temperature),
            max_tokens=cfg.max_tokens,
        )
        try:
            await self._sessions.record_api_request(turn.session_id, {**body, "__meta": context.meta()})
        except Exception as ex:
            logger.error(f"Failed to persist lastApiRequest for variant: {ex}")

        state = StreamSessionState(phase=RelayState.UPSTREAM_CALLING)
        upstream = await call_upstream(
            self._http,
            cfg.url,
            cfg.api_key,
            body,
            timeout_seconds=self._app.stream_timeout_ms / 1000,
        )

        if isinstance(upstream, WholeResponse):
            state.phase = RelayState.UPSTREAM_NON_STREAM
            return await self._finish_whole(turn, version, upstream)

        state.phase = RelayState.UPSTREAM_SSE
        channel = DownstreamChannel()
        persistence = VariantPersistence(self._variants, self._allocator, turn.session_id, turn_id, version)
        relay = StreamRelay(
            upstream,
            channel,
            persistence,
            lambda snapshot: self._sessions.record_api_response(turn.session_id, snapshot),
            state=state,
            label="Variant",
            heartbeat_interval=self._app.heartbeat_interval_ms / 1000,
            checkpoint_interval=self._app.checkpoint_interval_ms / 1000,
            checkpoint_frame_limit=self._app.checkpoint_frame_limit,
            debug_capture=self._app.debug_capture,
        )
        self._tasks.spawn(relay.run(), name=f"variant-relay-{turn_id}-{version}")
        return ChannelStreamingResponse(channel)

    async def _finish_whole(self, turn: TurnRecord, version: int, upstream: WholeResponse) -> Response:
        try:
            await self._sessions.record_api_response(turn.session_id, upstream.snapshot())
        except Exception as ex:
            logger.error(f"[Variant] Failed to persist lastApiResponse (non-stream): {ex}")

        if upstream.is_error:
            message = sanitize_error_message(upstream.error_message())
            logger.warning(f"[Variant][non-stream] Upstream failed: {upstream.status} {message}")
            return upstream_error_response(upstream.status, upstream.error_payload(), message)

        content = whole_content(upstream.data)
        if not content:
            raise UpstreamNoContent()

        async def write(candidate: int) -> VariantRecord:
            return await self._variants.create_variant(turn.session_id, turn.id, candidate, content)

        variant = await self._allocator.allocate_and_write(turn.id, write, first_version=version)
        return JSONResponse(variant.to_dict(), status_code=201)


def _requested_temperature(requested: Any, default: float) -> float:
    if isinstance(requested, str):
        try:
            requested = float(requested)
        except ValueError:
            return default
    if isinstance(requested, (int, float)) and not isinstance(requested, bool):
        return max(0.0, min(2.0, float(requested)))
    return default
