"""Token 估算。

不依赖任何分词器的确定性估算：约 4 个字符一个 token，
结构化内容（JSON、代码块）额外加 20%。
"""

import json
import math
from dataclasses import asdict
from typing import Optional

from chat_bridge.domain.models import ChatMessage, ToolResult


CHARS_PER_TOKEN = 4
STRUCTURED_OVERHEAD = 1.2
# 每条工具结果的固定开销（工具名、调用包装）
TOOL_RESULT_OVERHEAD = 4


def looks_structured(text: str) -> bool:
    return "{" in text or "[" in text or "```" in text


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    tokens = math.ceil(len(text) / CHARS_PER_TOKEN)
    if looks_structured(text):
        tokens = math.ceil(tokens * STRUCTURED_OVERHEAD)
    return tokens


def estimate_message_tokens(message: ChatMessage) -> int:
    tokens = estimate_tokens(message.content)
    for call in message.tool_calls or []:
        tokens += estimate_tokens(json.dumps(asdict(call), ensure_ascii=False, sort_keys=True))
    return tokens


def estimate_tool_result_tokens(result: ToolResult) -> int:
    return estimate_tokens(result.output) + estimate_tokens(result.error) + TOOL_RESULT_OVERHEAD
