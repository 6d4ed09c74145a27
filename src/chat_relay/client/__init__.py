from chat_relay.client.cancellation import CancellationToken
from chat_relay.client.orchestrator import StreamingRequestResult, perform_streaming_request
from chat_relay.client.stream_reader import is_sse_response, read_stream

__all__ = [
    "CancellationToken",
    "StreamingRequestResult",
    "is_sse_response",
    "perform_streaming_request",
    "read_stream",
]
