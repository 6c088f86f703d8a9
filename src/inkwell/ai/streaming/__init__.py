"""Stream wire format, decoding, cancellation and transports."""

from .abort import AbortedError, AbortSignal
from .decoder import StreamDecoder
from .events import StreamEvent, StreamEventType, TokenUsage, encode_frame
from .transport import ArticleContext, ChatRequest, HttpStreamTransport, StreamTransport, TransportError

__all__ = [
    "AbortedError",
    "AbortSignal",
    "StreamDecoder",
    "StreamEvent",
    "StreamEventType",
    "TokenUsage",
    "encode_frame",
    "ArticleContext",
    "ChatRequest",
    "HttpStreamTransport",
    "StreamTransport",
    "TransportError",
]
