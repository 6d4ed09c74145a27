import asyncio
import unittest

from chat_relay.relay import DownstreamChannel
from chat_relay.services.responses import ChannelStreamingResponse

SCOPE = {
    "type": "http",
    "asgi": {"version": "3.0", "spec_version": "2.0"},
    "http_version": "1.1",
    "method": "POST",
    "path": "/api/chat",
    "headers": [],
}


class ChannelStreamingResponseTests(unittest.TestCase):
    def test_hang_up_before_first_frame_reaches_the_channel(self) -> None:
        channel = DownstreamChannel()
        reasons: list[str] = []
        channel.on_disconnect(reasons.append)

        async def receive() -> dict:
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            # Slow socket: the body is cancelled before it pulls a frame.
            await asyncio.sleep(10)

        async def scenario() -> None:
            await asyncio.wait_for(ChannelStreamingResponse(channel)(SCOPE, receive, send), timeout=5)

        asyncio.run(scenario())

        self.assertTrue(channel.disconnected)
        self.assertEqual(["client disconnect"], reasons)
        self.assertFalse(channel.write("data: late\n\n"))

    def test_finished_stream_is_not_a_disconnect(self) -> None:
        channel = DownstreamChannel()
        channel.write("data: one\n\n")
        channel.close()
        sent: list[dict] = []

        async def receive() -> dict:
            await asyncio.Event().wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            sent.append(message)

        async def scenario() -> None:
            await asyncio.wait_for(ChannelStreamingResponse(channel)(SCOPE, receive, send), timeout=5)

        asyncio.run(scenario())

        self.assertFalse(channel.disconnected)
        self.assertEqual("http.response.start", sent[0]["type"])
        self.assertIn((b"content-type", b"text/event-stream; charset=utf-8"), sent[0]["headers"])
        self.assertEqual(b"data: one\n\n", sent[1]["body"])
        self.assertFalse(sent[-1].get("more_body", False))


if __name__ == "__main__":
    unittest.main()
