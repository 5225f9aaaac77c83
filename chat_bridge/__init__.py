"""Chat Bridge 顶层包。

该包把多种 LLM 后端（OpenAI、Anthropic、Ollama 以及 OpenAI 兼容的自定义端点）
统一到一套请求/响应模型之后，提供错误分类、退避重试、流式解码、连接校验，
以及带 token 预算与截断策略的对话上下文管理。
"""

from chat_bridge.bridge import ChatBridge, RetryPolicy
from chat_bridge.context import ConversationContext, create_coding_conversation_context, create_conversation_context
from chat_bridge.domain.exceptions import ChatError
from chat_bridge.domain.models import (
    BackendConfig,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    StreamDelta,
    ToolCall,
    ToolResult,
    ToolSpec,
)

__all__ = [
    "BackendConfig",
    "ChatBridge",
    "ChatError",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ConversationContext",
    "RetryPolicy",
    "StreamDelta",
    "ToolCall",
    "ToolResult",
    "ToolSpec",
    "create_coding_conversation_context",
    "create_conversation_context",
]
