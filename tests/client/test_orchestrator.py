import asyncio
import json
import unittest

import httpx

from chat_relay.client import CancellationToken, perform_streaming_request

URL = "http://relay.test/api/chat"
SSE = {"content-type": "text/event-stream"}


class _Recorder:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.results: list = []
        self.errors: list[str] = []
        self.partial_errors: list[BaseException] = []
        self.completed = 0
        self.aborted = 0

    def kwargs(self, **overrides) -> dict:
        base = {
            "on_stream_chunk": self.chunks.append,
            "on_non_stream_result": self.results.append,
            "on_error": self.errors.append,
            "on_complete": self._complete,
            "on_abort": self._abort,
        }
        base.update(overrides)
        return base

    def _complete(self) -> None:
        self.completed += 1

    def _abort(self) -> None:
        self.aborted += 1


def _run(handler, recorder: _Recorder, *, body: dict | None = None, **kwargs):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await perform_streaming_request(client, URL, body or {"userMessage": "hi"}, **recorder.kwargs(**kwargs))

    return asyncio.run(scenario())


class PerformStreamingRequestTests(unittest.TestCase):
    def test_streamed_reply_reports_accumulated_snapshots(self) -> None:
        sent: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(
                200,
                headers=SSE,
                content=b'data: {"status":"connected"}\n\ndata: {"content":"Hel"}\n\ndata: {"content":"lo"}\n\ndata: [DONE]\n\n',
            )

        recorder = _Recorder()
        result = _run(handler, recorder)

        self.assertEqual([{"userMessage": "hi", "stream": True}], sent)
        self.assertEqual(["Hel", "Hello"], recorder.chunks)
        self.assertEqual("Hello", result.streamed_content)
        self.assertTrue(result.was_streaming)
        self.assertFalse(result.was_aborted)
        self.assertEqual(1, recorder.completed)
        self.assertEqual([], recorder.errors)
        self.assertFalse(result.token.active)

    def test_whole_reply_goes_to_non_stream_callback(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertFalse(json.loads(request.content)["stream"])
            return httpx.Response(200, json={"choices": [{"message": {"content": "Hi"}}]})

        recorder = _Recorder()
        result = _run(handler, recorder, stream=False)

        self.assertEqual([{"choices": [{"message": {"content": "Hi"}}]}], recorder.results)
        self.assertEqual("", result.streamed_content)
        self.assertFalse(result.was_streaming)
        self.assertEqual(1, recorder.completed)

    def test_json_reply_to_stream_request_is_treated_as_whole(self) -> None:
        recorder = _Recorder()
        _run(lambda _r: httpx.Response(200, json={"ok": True}), recorder)
        self.assertEqual([{"ok": True}], recorder.results)
        self.assertEqual([], recorder.chunks)

    def test_error_status_is_extracted_and_sanitized(self) -> None:
        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Authentication Fails, api key: abcd"}})

        recorder = _Recorder()
        _run(handler, recorder)

        self.assertEqual(["Authentication Fails, api key: ****"], recorder.errors)
        self.assertEqual([], recorder.results)
        self.assertEqual(0, recorder.completed)

    def test_error_status_with_text_body(self) -> None:
        recorder = _Recorder()
        _run(lambda _r: httpx.Response(502, text="gateway: upstream down"), recorder)
        self.assertEqual(["upstream down"], recorder.errors)

    def test_transport_failure_goes_to_on_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        recorder = _Recorder()
        result = _run(handler, recorder)
        self.assertEqual(["connection refused"], recorder.errors)
        self.assertFalse(result.was_aborted)

    def test_cancel_during_stream_keeps_partial_content(self) -> None:
        token = CancellationToken()
        hold = asyncio.Event()

        async def body():
            yield b'data: {"content":"partial"}\n\n'
            await hold.wait()
            yield b'data: {"content":" never"}\n\n'

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers=SSE, content=body())

        recorder = _Recorder()

        def on_chunk(snapshot: str) -> None:
            recorder.chunks.append(snapshot)
            token.cancel()

        result = _run(handler, recorder, on_stream_chunk=on_chunk, token=token)

        self.assertTrue(result.was_aborted)
        self.assertEqual("partial", result.streamed_content)
        self.assertEqual(["partial"], recorder.chunks)
        self.assertEqual(1, recorder.aborted)
        self.assertEqual(0, recorder.completed)
        self.assertEqual([], recorder.errors)
        self.assertFalse(token.active)

    def test_token_cancelled_before_start_aborts_immediately(self) -> None:
        token = CancellationToken()
        token.cancel()
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        recorder = _Recorder()
        result = _run(handler, recorder, token=token)

        self.assertTrue(result.was_aborted)
        self.assertEqual([], calls)
        self.assertEqual(1, recorder.aborted)

    def test_failure_after_partial_content_uses_partial_handler(self) -> None:
        async def body():
            yield b'data: {"content":"half"}\n\n'
            raise httpx.ReadError("socket closed")

        recorder = _Recorder()
        result = _run(
            lambda _r: httpx.Response(200, headers=SSE, content=body()),
            recorder,
            on_partial_stream_error=recorder.partial_errors.append,
        )

        self.assertEqual("half", result.streamed_content)
        self.assertEqual(1, len(recorder.partial_errors))
        self.assertEqual([], recorder.errors)
        self.assertEqual(0, recorder.completed)

    def test_failure_before_content_goes_to_on_error(self) -> None:
        async def body():
            raise httpx.ReadError("Error: input stream closed")
            yield b""

        recorder = _Recorder()
        _run(lambda _r: httpx.Response(200, headers=SSE, content=body()), recorder)
        self.assertEqual(["The AI stream was interrupted. Partial response was saved if available."], recorder.errors)


if __name__ == "__main__":
    unittest.main()
