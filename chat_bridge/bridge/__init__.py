"""调度层：错误分类、重试调度、流式解码与对外入口 ChatBridge。"""

from chat_bridge.bridge.facade import ChatBridge
from chat_bridge.bridge.retry import RetryPolicy, RetryScheduler
from chat_bridge.bridge.streaming import FrameDecoder, StreamAccumulator, decode_stream

__all__ = [
    "ChatBridge",
    "FrameDecoder",
    "RetryPolicy",
    "RetryScheduler",
    "StreamAccumulator",
    "decode_stream",
]
