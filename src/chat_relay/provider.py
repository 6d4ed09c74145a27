"""Upstream provider presets and request-parameter normalization."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chat_relay.api_errors import ServerError
from chat_relay.cache import TTLCache

if TYPE_CHECKING:
    from chat_relay.app_config import AppConfig, RuntimeEnv

DEFAULT_FALLBACK_URL = "https://api.deepseek.com/chat/completions"

PRESETS: dict[str, tuple[str, str]] = {
    "deepseek": ("https://api.deepseek.com/chat/completions", "deepseek-chat"),
    "openai": ("https://api.openai.com/v1/chat/completions", "gpt-5-mini"),
    "openrouter": ("https://openrouter.ai/api/v1/chat/completions", "openrouter/auto"),
    "anthropic": ("https://api.anthropic.com/v1/messages", "claude-3-5-haiku-20241022"),
}

CUSTOM_PROVIDER = "custom"
CUSTOM_MODEL_PLACEHOLDER = "model-name-here"

TRUNCATION_MIN = 30_000
TRUNCATION_MAX = 320_000
MAX_TOKENS_MIN = 256
MAX_TOKENS_MAX = 8192

_GPT5 = re.compile(r"^gpt-5", re.IGNORECASE)
_GPT41 = re.compile(r"gpt-4\.1", re.IGNORECASE)


class ProviderConfigError(ServerError):
    def __init__(self, message: str, code: str):
        super().__init__(message, code)


@dataclass(frozen=True)
class AIConfig:
    api_key: str
    provider: str
    url: str
    model: str
    token_field_override: str | None
    enable_temperature: bool
    temperature: float
    max_tokens: int
    truncation_limit: int


def clamp_max_tokens(value: int, minimum: int = MAX_TOKENS_MIN) -> int:
    return max(minimum, min(MAX_TOKENS_MAX, value))


def clamp_truncation_limit(value: int) -> int:
    return max(TRUNCATION_MIN, min(TRUNCATION_MAX, value))


def token_field_for(provider: str, model: str, override: str | None = None) -> str:
    """Name of the "max output size" field the provider expects."""
    if override:
        return override
    if provider == "openai" and (_GPT5.search(model) or _GPT41.search(model)):
        return "max_completion_tokens"
    return "max_tokens"


def normalize_temperature(
    provider: str,
    model: str,
    requested: float | None,
    enable_temperature: bool | None,
) -> float | None:
    """Temperature to send upstream, or None to omit the field."""
    if not enable_temperature or requested is None:
        return None
    if provider == "openai" and _GPT5.search(model):
        # gpt-5 models reject anything but the default.
        return 1 if requested == 1 else None
    return max(0.0, min(2.0, float(requested)))


def resolve_ai_config(app: AppConfig, env: RuntimeEnv, cache: TTLCache[AIConfig] | None = None) -> AIConfig:
    """Resolve endpoint, model and credential for the configured provider.

    Raises :class:`ProviderConfigError` with ``NO_API_KEY``,
    ``UNKNOWN_PROVIDER`` or ``MISSING_CUSTOM_URL``.
    """
    if cache is not None:
        cached = cache.get(app.provider_name)
        if cached is not None:
            return cached

    provider = app.provider_name or "deepseek"
    api_key = env.api_keys.get(provider) or env.fallback_api_key
    if not api_key:
        raise ProviderConfigError("API key not configured for selected provider", "NO_API_KEY")
    if provider != CUSTOM_PROVIDER and provider not in PRESETS:
        raise ProviderConfigError(f"Unknown provider: {provider}", "UNKNOWN_PROVIDER")

    if provider == CUSTOM_PROVIDER:
        url = (app.api_base_url or "").strip()
        if not url:
            raise ProviderConfigError("Custom provider selected but ApiBaseUrl is empty", "MISSING_CUSTOM_URL")
        model = (app.model_name or CUSTOM_MODEL_PLACEHOLDER).strip()
    else:
        url, preset_model = PRESETS[provider]
        model = (app.model_name or "").strip() or preset_model

    resolved = AIConfig(
        api_key=api_key,
        provider=provider,
        url=url,
        model=model,
        token_field_override=(app.max_token_field_name or "").strip() or None,
        enable_temperature=app.enable_temperature,
        temperature=app.temperature,
        max_tokens=app.max_tokens,
        truncation_limit=app.max_characters,
    )
    if cache is not None:
        cache.set(app.provider_name, resolved)
    return resolved
