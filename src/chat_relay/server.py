from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from chat_relay.api_errors import ApiError, NotFound
from chat_relay.bootstrap import AppRuntime
from chat_relay.services.chat_service import ChatRequest


class ChatBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    user_message: str | None = Field(default=None, alias="userMessage")
    stream: bool = True
    temperature: float | None = None
    max_tokens: int | str | None = Field(default=None, alias="maxTokens")
    retry: bool = False


class VariantGenerateBody(BaseModel):
    stream: bool = False
    temperature: float | str | None = None


class VariantUpdateBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    variant_id: str = Field(alias="variantId")
    content: str | None = None


class VariantActionBody(BaseModel):
    action: str | None = None


def create_app(runtime: AppRuntime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        logger.info(f"Shutting down; waiting for {len(runtime.tasks)} relay task(s)")
        await runtime.aclose()

    app = FastAPI(title="chat-relay", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(ApiError)
    async def _api_error_handler(_request: Request, exc: ApiError) -> JSONResponse:
        if exc.status >= 500:
            logger.error(f"{exc.code}: {exc.message}")
        return exc.to_response()

    app.include_router(_chat_routes(runtime))
    app.include_router(_variant_routes(runtime))

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "activeRelays": len(runtime.tasks)}

    return app


def _chat_routes(runtime: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/chat", tags=["chat"])

    @router.post("")
    async def chat(body: ChatBody):
        return await runtime.chat.handle(
            ChatRequest(
                session_id=body.session_id,
                user_message=body.user_message,
                stream=body.stream,
                temperature=body.temperature,
                max_tokens=body.max_tokens,
                retry=body.retry,
            )
        )

    @router.get("/request-log/{session_id}")
    async def request_log(session_id: str):
        payload = await runtime.sessions.get_api_request(session_id)
        if payload is None:
            raise NotFound("Request log not found", "REQUEST_LOG_NOT_FOUND")
        return payload

    @router.get("/response-log/{session_id}")
    async def response_log(session_id: str):
        payload = await runtime.sessions.get_api_response(session_id)
        if payload is None:
            raise NotFound("Response log not found", "RESPONSE_LOG_NOT_FOUND")
        return payload

    return router


def _variant_routes(runtime: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/messages/{message_id}/variants", tags=["variants"])
    service = runtime.variant_service

    @router.get("")
    async def list_variants(message_id: str):
        return [v.to_dict() for v in await service.list_variants(message_id)]

    @router.get("/latest")
    async def latest_variant(message_id: str):
        return (await service.latest(message_id)).to_dict()

    @router.post("")
    async def generate_variant(message_id: str, body: VariantGenerateBody | None = None):
        body = body or VariantGenerateBody()
        return await service.generate(message_id, stream=body.stream, temperature=body.temperature)

    @router.put("")
    async def update_variant(message_id: str, body: VariantUpdateBody):
        if body.content is not None:
            variant = await service.update_content(message_id, body.variant_id, body.content)
        else:
            variant = await service.activate(message_id, body.variant_id)
        return variant.to_dict()

    @router.delete("")
    async def delete_variants(message_id: str):
        return {"deleted": await service.delete_all(message_id)}

    @router.patch("")
    async def rollback_variant(message_id: str, body: VariantActionBody):
        return await service.rollback_stopped(message_id, body.action)

    return router
