from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from chat_relay.provider import clamp_max_tokens, clamp_truncation_limit
from chat_relay.truncation import DEFAULT_TRUNCATION_LIMIT

PROVIDER_KEY_ENV_VARS = {
    "deepseek": "DEEPSEEK_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "custom": "CUSTOM_API_KEY",
}
FALLBACK_KEY_ENV_VAR = "CHAT_API_KEY"


@dataclass
class RuntimeEnv:
    api_keys: dict[str, str] = field(default_factory=dict)
    fallback_api_key: str = ""


@dataclass
class AppConfig:
    provider_name: str = "deepseek"
    api_base_url: str | None = None
    model_name: str | None = None
    max_token_field_name: str | None = None
    enable_temperature: bool = True
    temperature: float = 0.7
    max_tokens: int = 4096
    max_characters: int = DEFAULT_TRUNCATION_LIMIT
    stream_timeout_ms: int = 90_000
    heartbeat_interval_ms: int = 10_000
    checkpoint_interval_ms: int = 1_500
    checkpoint_frame_limit: int = 100
    variant_max_attempts: int = 3
    system_prompt: str = ""
    db_path: str = ".chat_relay/chat.db"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    log_consumers: list | None = None
    debug_capture: bool = False


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _to_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _optional_str(value: object) -> str | None:
    return str(value).strip() or None if value is not None else None


def parse_app_config(config: dict, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build :class:`AppConfig` from ``config.json`` values; a few environment variables win."""
    environ = os.environ if environ is None else environ

    stream_timeout_ms = _to_int(config.get("StreamTimeoutMs", 90_000), 90_000)
    if environ.get("STREAM_TIMEOUT_MS"):
        stream_timeout_ms = _to_int(environ["STREAM_TIMEOUT_MS"], stream_timeout_ms)

    debug_capture = _to_bool(config.get("DebugCapture", False), default=False)
    if "DEBUG_CHAT_CAPTURE" in environ:
        debug_capture = _to_bool(environ["DEBUG_CHAT_CAPTURE"], default=debug_capture)

    return AppConfig(
        provider_name=str(config.get("Provider", "deepseek")).strip().lower(),
        api_base_url=_optional_str(config.get("ApiBaseUrl")),
        model_name=_optional_str(config.get("ModelName")),
        max_token_field_name=_optional_str(config.get("MaxTokenFieldName")),
        enable_temperature=_to_bool(config.get("EnableTemperature", True), default=True),
        temperature=float(config.get("Temperature", 0.7)),
        max_tokens=clamp_max_tokens(_to_int(config.get("MaxTokens", 4096), 4096)),
        max_characters=clamp_truncation_limit(
            _to_int(config.get("MaxCharacters", DEFAULT_TRUNCATION_LIMIT), DEFAULT_TRUNCATION_LIMIT)
        ),
        stream_timeout_ms=stream_timeout_ms,
        heartbeat_interval_ms=_to_int(config.get("HeartbeatIntervalMs", 10_000), 10_000),
        checkpoint_interval_ms=_to_int(config.get("CheckpointIntervalMs", 1_500), 1_500),
        checkpoint_frame_limit=_to_int(config.get("CheckpointFrameLimit", 100), 100),
        variant_max_attempts=max(1, _to_int(config.get("VariantMaxAttempts", 3), 3)),
        system_prompt=str(config.get("SystemPrompt", "")),
        db_path=str(config.get("DbPath", ".chat_relay/chat.db")),
        host=str(config.get("Host", "127.0.0.1")),
        port=_to_int(config.get("Port", 8000), 8000),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
        debug_capture=debug_capture,
    )


def resolve_runtime_env(environ: Mapping[str, str] | None = None) -> RuntimeEnv:
    environ = os.environ if environ is None else environ
    return RuntimeEnv(
        api_keys={
            provider: environ.get(var, "")
            for provider, var in PROVIDER_KEY_ENV_VARS.items()
            if environ.get(var)
        },
        fallback_api_key=environ.get(FALLBACK_KEY_ENV_VAR, ""),
    )
