"""Single outbound call to the model provider, resolved once into a tagged result."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

import httpx
from loguru import logger

from chat_relay.api_errors import UpstreamAborted
from chat_relay.error_utils import parse_body_text
from chat_relay.provider import DEFAULT_FALLBACK_URL, AIConfig, normalize_temperature, token_field_for
from chat_relay.sse import is_sse_content_type

CONNECT_TIMEOUT_SECONDS = 15.0


@dataclass
class WholeResponse:
    status: int
    headers: dict[str, str]
    raw_text: str
    data: dict[str, Any]

    @property
    def is_error(self) -> bool:
        return self.status >= 400

    @property
    def parsed(self) -> bool:
        return "__rawText" not in self.data

    def snapshot(self) -> dict[str, Any]:
        return {
            "mode": "json",
            "upstreamStatus": self.status,
            "headers": self.headers,
            "bodyText": self.raw_text,
            "body": self.data if self.parsed else None,
        }

    def error_payload(self) -> dict[str, Any]:
        return self.data if self.parsed else {"message": self.raw_text}

    def error_message(self) -> str:
        payload = self.error_payload()
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if payload.get("message"):
            return str(payload["message"])
        return "Upstream request failed"


@dataclass
class IncrementalResponse:
    status: int
    headers: dict[str, str]
    response: httpx.Response = field(repr=False)

    def aiter_bytes(self):
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        await self.response.aclose()


UpstreamResult = Union[WholeResponse, IncrementalResponse]


def build_request_body(
    cfg: AIConfig,
    messages: list[dict],
    *,
    stream: bool,
    temperature: float | None,
    max_tokens: int | None,
) -> dict[str, Any]:
    """Upstream payload in the order model, temperature, stream, token field, messages."""
    body: dict[str, Any] = {"model": cfg.model}
    normalized = normalize_temperature(cfg.provider, cfg.model, temperature, cfg.enable_temperature)
    if normalized is not None:
        body["temperature"] = normalized
    body["stream"] = stream
    if max_tokens:
        body[token_field_for(cfg.provider, cfg.model, cfg.token_field_override)] = max_tokens
    body["messages"] = messages
    return body


def whole_content(data: dict[str, Any]) -> str | None:
    """Assistant text of a non-incremental reply, if it has any."""
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str) and content:
            return content
    content = data.get("content")
    if isinstance(content, str) and content:
        return content
    if isinstance(content, list):
        text = "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return text or None
    return None


async def call_upstream(
    client: httpx.AsyncClient,
    url: str | None,
    api_key: str,
    body: dict[str, Any],
    *,
    timeout_seconds: float,
) -> UpstreamResult:
    """POST ``body`` upstream and classify the reply by its content type.

    ``timeout_seconds`` bounds inactivity: no single read may wait longer.
    Transport failures before a response arrives raise
    :class:`UpstreamAborted` and are not retried.
    """
    request = client.build_request(
        "POST",
        url or DEFAULT_FALLBACK_URL,
        json=body,
        headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
        timeout=httpx.Timeout(timeout_seconds, connect=min(CONNECT_TIMEOUT_SECONDS, timeout_seconds)),
    )
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as ex:
        logger.warning(f"[Timeout] Aborting upstream fetch after {timeout_seconds * 1000:.0f}ms timeout")
        raise UpstreamAborted() from ex
    except httpx.TransportError as ex:
        logger.error(f"[Upstream] Transport failure: {type(ex).__name__}: {ex}")
        raise UpstreamAborted() from ex

    headers = dict(response.headers.items())
    content_type = response.headers.get("content-type", "")
    if body.get("stream") and is_sse_content_type(content_type):
        return IncrementalResponse(status=response.status_code, headers=headers, response=response)

    if body.get("stream"):
        logger.warning(f"[Upstream] Expected SSE but received non-SSE content-type: {content_type!r}")
    try:
        await response.aread()
    except httpx.TransportError as ex:
        raise UpstreamAborted() from ex
    finally:
        await response.aclose()

    raw_text = response.text
    data = parse_body_text(raw_text)
    if "__rawText" in data:
        logger.warning("[Upstream][non-stream] Failed to parse JSON, keeping raw text")
    return WholeResponse(status=response.status_code, headers=headers, raw_text=raw_text, data=data)
