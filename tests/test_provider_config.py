import unittest

from chat_relay.app_config import AppConfig, RuntimeEnv, parse_app_config, resolve_runtime_env
from chat_relay.cache import TTLCache
from chat_relay.provider import (
    PRESETS,
    ProviderConfigError,
    clamp_max_tokens,
    normalize_temperature,
    resolve_ai_config,
    token_field_for,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class ResolveAIConfigTests(unittest.TestCase):
    def test_preset_defaults(self) -> None:
        cfg = resolve_ai_config(AppConfig(provider_name="openai"), RuntimeEnv(api_keys={"openai": "sk-o"}))
        self.assertEqual(PRESETS["openai"][0], cfg.url)
        self.assertEqual(PRESETS["openai"][1], cfg.model)
        self.assertEqual("sk-o", cfg.api_key)

    def test_model_name_overrides_preset(self) -> None:
        cfg = resolve_ai_config(
            AppConfig(provider_name="deepseek", model_name="deepseek-reasoner"),
            RuntimeEnv(fallback_api_key="sk-f"),
        )
        self.assertEqual("deepseek-reasoner", cfg.model)
        self.assertEqual("sk-f", cfg.api_key)

    def test_missing_key(self) -> None:
        with self.assertRaises(ProviderConfigError) as ctx:
            resolve_ai_config(AppConfig(), RuntimeEnv())
        self.assertEqual("NO_API_KEY", ctx.exception.code)

    def test_unknown_provider(self) -> None:
        with self.assertRaises(ProviderConfigError) as ctx:
            resolve_ai_config(AppConfig(provider_name="acme"), RuntimeEnv(fallback_api_key="k"))
        self.assertEqual("UNKNOWN_PROVIDER", ctx.exception.code)

    def test_custom_provider_needs_url(self) -> None:
        env = RuntimeEnv(api_keys={"custom": "k"})
        with self.assertRaises(ProviderConfigError) as ctx:
            resolve_ai_config(AppConfig(provider_name="custom"), env)
        self.assertEqual("MISSING_CUSTOM_URL", ctx.exception.code)

        cfg = resolve_ai_config(AppConfig(provider_name="custom", api_base_url=" http://local/v1 "), env)
        self.assertEqual("http://local/v1", cfg.url)
        self.assertEqual("model-name-here", cfg.model)

    def test_cached_until_expiry(self) -> None:
        clock = _Clock()
        cache = TTLCache(5.0, clock=clock)
        env = RuntimeEnv(fallback_api_key="first")
        app = AppConfig()

        self.assertEqual("first", resolve_ai_config(app, env, cache).api_key)
        env.fallback_api_key = "second"
        self.assertEqual("first", resolve_ai_config(app, env, cache).api_key)

        clock.now += 5.0
        self.assertEqual("second", resolve_ai_config(app, env, cache).api_key)


class ProviderParameterTests(unittest.TestCase):
    def test_token_field(self) -> None:
        self.assertEqual("max_completion_tokens", token_field_for("openai", "gpt-5-mini"))
        self.assertEqual("max_completion_tokens", token_field_for("openai", "gpt-4.1-nano"))
        self.assertEqual("max_tokens", token_field_for("openai", "gpt-4o"))
        self.assertEqual("max_tokens", token_field_for("openrouter", "openai/gpt-5"))
        self.assertEqual("custom_field", token_field_for("openai", "gpt-5", "custom_field"))

    def test_temperature(self) -> None:
        self.assertIsNone(normalize_temperature("deepseek", "deepseek-chat", 0.7, False))
        self.assertIsNone(normalize_temperature("deepseek", "deepseek-chat", None, True))
        self.assertEqual(2.0, normalize_temperature("deepseek", "deepseek-chat", 3.5, True))
        self.assertEqual(0.0, normalize_temperature("deepseek", "deepseek-chat", -1, True))
        self.assertIsNone(normalize_temperature("openai", "gpt-5-mini", 0.7, True))
        self.assertEqual(1, normalize_temperature("openai", "gpt-5-mini", 1, True))

    def test_max_token_clamp(self) -> None:
        self.assertEqual(256, clamp_max_tokens(10))
        self.assertEqual(8192, clamp_max_tokens(100_000))
        self.assertEqual(1000, clamp_max_tokens(1000))


class ParseAppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = parse_app_config({}, environ={})
        self.assertEqual("deepseek", cfg.provider_name)
        self.assertEqual(90_000, cfg.stream_timeout_ms)
        self.assertEqual(150_000, cfg.max_characters)
        self.assertFalse(cfg.debug_capture)

    def test_values_are_normalized_and_clamped(self) -> None:
        cfg = parse_app_config(
            {
                "Provider": " OpenAI ",
                "ModelName": "  ",
                "MaxTokens": "99999",
                "MaxCharacters": 1000,
                "EnableTemperature": "false",
                "SystemPrompt": "Be brief.",
            },
            environ={},
        )
        self.assertEqual("openai", cfg.provider_name)
        self.assertIsNone(cfg.model_name)
        self.assertEqual(8192, cfg.max_tokens)
        self.assertEqual(30_000, cfg.max_characters)
        self.assertFalse(cfg.enable_temperature)
        self.assertEqual("Be brief.", cfg.system_prompt)

    def test_environment_overrides(self) -> None:
        cfg = parse_app_config(
            {"StreamTimeoutMs": 1000, "DebugCapture": False},
            environ={"STREAM_TIMEOUT_MS": "2500", "DEBUG_CHAT_CAPTURE": "1"},
        )
        self.assertEqual(2500, cfg.stream_timeout_ms)
        self.assertTrue(cfg.debug_capture)

    def test_runtime_env(self) -> None:
        env = resolve_runtime_env({"OPENAI_API_KEY": "sk-o", "DEEPSEEK_API_KEY": "", "CHAT_API_KEY": "sk-f"})
        self.assertEqual({"openai": "sk-o"}, env.api_keys)
        self.assertEqual("sk-f", env.fallback_api_key)


class TTLCacheTests(unittest.TestCase):
    def test_expiry_and_invalidate(self) -> None:
        clock = _Clock()
        cache: TTLCache[int] = TTLCache(5.0, clock=clock)
        cache.set("a", 1)
        self.assertEqual(1, cache.get("a"))
        clock.now = 104.0
        self.assertEqual(1, cache.get("a"))
        clock.now = 105.0
        self.assertIsNone(cache.get("a"))
        self.assertEqual(0, len(cache))

        cache.set("b", 2)
        cache.invalidate("b")
        self.assertIsNone(cache.get("b"))

    def test_get_or_create(self) -> None:
        cache: TTLCache[int] = TTLCache(5.0, clock=_Clock())
        calls: list[int] = []

        def factory() -> int:
            calls.append(1)
            return 42

        self.assertEqual(42, cache.get_or_create("k", factory))
        self.assertEqual(42, cache.get_or_create("k", factory))
        self.assertEqual(1, len(calls))


if __name__ == "__main__":
    unittest.main()
