from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from chat_relay.api_errors import api_key_not_configured
from chat_relay.app_config import AppConfig, RuntimeEnv
from chat_relay.cache import TTLCache
from chat_relay.memory import TurnRecord
from chat_relay.provider import AIConfig, ProviderConfigError, clamp_max_tokens, resolve_ai_config
from chat_relay.system_prompt import build_system_prompt
from chat_relay.truncation import total_characters, truncate, with_truncation_note

CONTINUE_PREFIX = "[SYSTEM NOTE: Ignore this message"
PLACEHOLDER_USER_TURN = {"role": "user", "content": "."}


def is_continuation_placeholder(message: str | None) -> bool:
    return bool(message) and message.startswith(CONTINUE_PREFIX)


def resolve_config(app: AppConfig, env: RuntimeEnv, cache: TTLCache[AIConfig] | None) -> AIConfig:
    try:
        return resolve_ai_config(app, env, cache)
    except ProviderConfigError as ex:
        if ex.code == "NO_API_KEY":
            raise api_key_not_configured() from ex
        raise


def history_turns(turns: Iterable[TurnRecord]) -> list[dict]:
    """Stored turns as upstream messages, minus continuation directives kept by older sessions."""
    return [
        {"role": t.role, "content": t.content}
        for t in turns
        if not (t.role == "user" and is_continuation_placeholder(t.content))
    ]


def resolve_max_tokens(requested: Any, default: int) -> int:
    if isinstance(requested, bool):
        return default
    if isinstance(requested, (int, float)):
        return clamp_max_tokens(int(requested))
    if isinstance(requested, str):
        try:
            return clamp_max_tokens(int(requested.strip()))
        except ValueError:
            return default
    return default


@dataclass
class PreparedContext:
    messages: list[dict]
    base_count: int
    was_truncated: bool
    truncation_limit: int

    def meta(self) -> dict[str, Any]:
        return {
            "wasTruncated": self.was_truncated,
            "sentCount": len(self.messages),
            "baseCount": self.base_count,
            "truncationLimit": self.truncation_limit,
        }


def prepare_context(
    history: list[dict],
    *,
    base_prompt: str,
    summary: str | None,
    truncation_limit: int,
    always_placeholder: bool = False,
    continuation: str | None = None,
) -> PreparedContext:
    """System turn, optional ``"."`` user turn and history, truncated to the character budget.

    A continuation directive is appended after truncation so it is never dropped.
    """
    system = {"role": "system", "content": build_system_prompt(base_prompt, summary)}
    needs_placeholder = always_placeholder or not any(m["role"] == "user" for m in history)
    base = [system, *([dict(PLACEHOLDER_USER_TURN)] if needs_placeholder else []), *history]
    logger.info(f"[Truncation] Before truncation: {len(base)} messages, {total_characters(base)} total characters")

    result = truncate(base, truncation_limit)
    messages = with_truncation_note(result)
    if result.was_truncated:
        logger.info(f"[Truncation] Truncated {result.removed_count} messages")

    if continuation:
        logger.info("[Continuation] Appending ephemeral continuation user message after truncation")
        messages.append({"role": "user", "content": continuation})

    return PreparedContext(
        messages=messages,
        base_count=len(base),
        was_truncated=result.was_truncated,
        truncation_limit=truncation_limit,
    )
