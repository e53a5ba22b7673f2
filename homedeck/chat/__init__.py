"""Chat client: thread/message CRUD and the streaming agent consumer."""

from homedeck.chat.api import ApiResult, ChatApiClient
from homedeck.chat.cancellation import CancelRegistry, CancelToken
from homedeck.chat.models import Message, StreamingMetadata, StreamRequest, Thread
from homedeck.chat.session import ChatSession
from homedeck.chat.stream import StreamConsumer, StreamOutcome

__all__ = [
    "ApiResult",
    "CancelRegistry",
    "CancelToken",
    "ChatApiClient",
    "ChatSession",
    "Message",
    "StreamConsumer",
    "StreamOutcome",
    "StreamRequest",
    "StreamingMetadata",
    "Thread",
]
