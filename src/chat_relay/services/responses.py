from __future__ import annotations

from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from chat_relay.relay import DownstreamChannel
from chat_relay.sse import SSE_CONTENT_TYPE, SSE_HEADERS


class ChannelStreamingResponse(StreamingResponse):
    """Event-stream response whose body is a relay's downstream channel.

    The body generator only notices a hang-up once it has started. The
    server may cancel the response before the first frame is pulled, so
    the channel is also told here whenever the response ends while it is
    still open.
    """

    def __init__(self, channel: DownstreamChannel):
        super().__init__(channel.frames(), media_type=SSE_CONTENT_TYPE, headers=SSE_HEADERS)
        self.channel = channel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # No-op once the relay has closed the channel.
            self.channel.mark_disconnected("client disconnect")
