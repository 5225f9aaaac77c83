"""对话上下文管理：有序消息日志、工具结果与 token 预算。"""

from chat_bridge.context.manager import (
    ConversationContext,
    ContextConfig,
    TruncationStrategy,
    create_coding_conversation_context,
    create_conversation_context,
)
from chat_bridge.context.tokens import estimate_tokens

__all__ = [
    "ConversationContext",
    "ContextConfig",
    "TruncationStrategy",
    "create_coding_conversation_context",
    "create_conversation_context",
    "estimate_tokens",
]
