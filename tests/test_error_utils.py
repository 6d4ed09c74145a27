import asyncio
import unittest

import httpx

from chat_relay.error_utils import (
    STREAM_INTERRUPTED_MESSAGE,
    extract_error_from_response,
    extract_useful_error,
    parse_body_text,
    safe_json,
    sanitize_error_message,
    sanitize_payload,
)


class SanitizeErrorMessageTests(unittest.TestCase):
    def test_short_key_is_fully_masked(self) -> None:
        self.assertEqual("api key: ****", sanitize_error_message("api key: abcd"))

    def test_long_key_keeps_last_four(self) -> None:
        masked = sanitize_error_message("Invalid api key: sk-abcdefghijkl1234567890")
        self.assertEqual("Invalid api key: " + "*" * 22 + "7890", masked)

    def test_case_and_spacing_are_tolerated(self) -> None:
        self.assertEqual("API Key :   ****wxyz", sanitize_error_message("API Key :   abcdwxyz"))

    def test_empty_input(self) -> None:
        self.assertEqual("", sanitize_error_message(""))
        self.assertEqual("", sanitize_error_message(None))

    def test_text_without_key_is_unchanged(self) -> None:
        self.assertEqual("rate limited", sanitize_error_message("rate limited"))


class SanitizePayloadTests(unittest.TestCase):
    def test_every_string_leaf_is_masked(self) -> None:
        payload = {
            "error": {"message": "Your api key: sk-abcdefghijklmnop1234 is invalid", "code": 401},
            "hints": ["api key: abcd", None],
            "header": "Authorization: Bearer abc.def",
        }

        cleaned = sanitize_payload(payload)

        self.assertEqual("Your api key: *******************1234 is invalid", cleaned["error"]["message"])
        self.assertEqual(401, cleaned["error"]["code"])
        self.assertEqual(["api key: ****", None], cleaned["hints"])
        self.assertNotIn("abc.def", cleaned["header"])
        self.assertIn("sk-abcdefghijklmnop1234", payload["error"]["message"])

    def test_scalars_pass_through(self) -> None:
        self.assertIsNone(sanitize_payload(None))
        self.assertEqual("plain", sanitize_payload("plain"))


class ExtractUsefulErrorTests(unittest.TestCase):
    def test_stream_interruption_is_reworded(self) -> None:
        self.assertEqual(STREAM_INTERRUPTED_MESSAGE, extract_useful_error("[Upstream] Error: input stream closed"))

    def test_authentication_message_is_kept_whole(self) -> None:
        self.assertEqual(
            "Authentication Fails, bad credentials",
            extract_useful_error("[DeepSeek] 401: Authentication Fails, bad credentials"),
        )

    def test_text_after_last_colon(self) -> None:
        self.assertEqual("model overloaded", extract_useful_error("Request failed: upstream: model overloaded"))

    def test_plain_message_and_empty(self) -> None:
        self.assertEqual("boom", extract_useful_error("  boom  "))
        self.assertEqual("", extract_useful_error(""))


class ExtractErrorFromResponseTests(unittest.TestCase):
    def test_nested_error_message(self) -> None:
        self.assertEqual(
            "quota exceeded",
            extract_error_from_response({"error": {"message": "Bad thing: quota exceeded"}}),
        )

    def test_raw_text_wins_over_nested_message(self) -> None:
        data = {"__rawText": "gateway: upstream timeout", "error": {"message": "ignored"}}
        self.assertEqual("upstream timeout", extract_error_from_response(data))

    def test_string_error_field(self) -> None:
        self.assertEqual("plain string", extract_error_from_response({"error": "plain string"}))

    def test_falls_back_to_status_text_then_unknown(self) -> None:
        self.assertEqual("Bad Gateway", extract_error_from_response({}, "Bad Gateway"))
        self.assertEqual("Unknown error", extract_error_from_response(None))

    def test_result_is_sanitized(self) -> None:
        data = {"error": {"message": "Authentication Fails, api key: abcd is invalid"}}
        self.assertEqual("Authentication Fails, api key: **** is invalid", extract_error_from_response(data))


class BodyParsingTests(unittest.TestCase):
    def test_parse_body_text(self) -> None:
        self.assertEqual({"a": 1}, parse_body_text('{"a": 1}'))
        self.assertEqual({"__rawText": "[1]"}, parse_body_text("[1]"))
        self.assertEqual({"__rawText": "nope"}, parse_body_text("nope"))

    def test_safe_json_variants(self) -> None:
        def build(content: bytes) -> httpx.Response:
            return httpx.Response(500, content=content, request=httpx.Request("POST", "https://upstream.test"))

        self.assertEqual({"error": "x"}, asyncio.run(safe_json(build(b'{"error": "x"}'))))
        self.assertEqual({"__rawText": "oops"}, asyncio.run(safe_json(build(b"oops"))))


if __name__ == "__main__":
    unittest.main()
