"""Adapter 抽象接口。

Facade 不直接依赖具体后端的 HTTP 格式，而是依赖此协议：

- 每个后端家族实现一个 Adapter（openai / anthropic / ollama / custom）。
- 负责：把 ChatRequest 转成 WireRequest，把响应 JSON 解析为 ChatResponse，
  把流式帧解析为 StreamDelta，把错误体提取为 ErrorBody。
- 不负责：重试、错误分类、发送 HTTP。这些分别属于 RetryScheduler、classifier 和 Facade，
  因此 Adapter 可以脱离网络单独测试。

解析失败时 Adapter 抛出 ValueError；后端返回了结构不符的 JSON（例如期望对象处给了字符串）时，
访问字段可能抛出 TypeError / AttributeError / KeyError。调用方统一按 MALFORMED_ERRORS 捕获并转换为规范错误。
"""

import json
from typing import Any, Dict, Optional, Protocol, Tuple

from chat_bridge.domain.exceptions import ErrorBody
from chat_bridge.domain.models import (
    BackendConfig,
    ChatRequest,
    ChatResponse,
    ChatUsage,
    FinishReason,
    StreamDelta,
    WireRequest,
)


MALFORMED_ERRORS = (ValueError, TypeError, AttributeError, KeyError)


class BackendAdapter(Protocol):
    """后端 Adapter 协议。

    - name: 家族名称，用于日志与错误信息。
    - stream_format: 流式响应帧格式，"sse" 或 "ndjson"。
    - requires_credential / requires_endpoint: Facade 在发起任何网络调用前检查。
    """

    name: str
    stream_format: str
    requires_credential: bool
    requires_endpoint: bool

    def build_request(self, req: ChatRequest, config: BackendConfig, stream: bool = False) -> WireRequest:
        ...

    def parse_response(self, data: Any, config: BackendConfig) -> ChatResponse:
        ...

    def parse_stream_frame(self, event: Optional[str], payload: Any) -> Optional[StreamDelta]:
        """解析一个流式帧；与内容无关的帧（ping 等）返回 None。"""

        ...

    def health_check_request(self, config: BackendConfig) -> WireRequest:
        ...

    def find_missing_model(self, data: Any, config: BackendConfig) -> Optional[Tuple[str, ...]]:
        """健康检查响应中找不到配置的模型时返回可用模型列表，否则返回 None。"""

        ...

    def parse_error_body(self, status: int, text: str) -> ErrorBody:
        ...


def load_json(text: str) -> Any:
    try:
        return json.loads(text) if text else None
    except json.JSONDecodeError:
        return None


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """解析工具调用的 arguments 字段。

    OpenAI 兼容接口把 arguments 作为 JSON 字符串返回，这里做一层 json.loads，
    失败时保留原始字符串到 `_raw`，避免信息丢失。
    """

    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return value if isinstance(value, dict) else {"_raw": raw}
    return {}


def build_usage(prompt: Any, completion: Any, total: Any = None) -> ChatUsage:
    prompt_tokens = int(prompt or 0)
    completion_tokens = int(completion or 0)
    total_tokens = int(total) if total is not None else prompt_tokens + completion_tokens
    return ChatUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
    )


def normalize_finish_reason(raw: Optional[str], has_tool_calls: bool = False) -> FinishReason:
    if raw in ("stop", "end_turn", "stop_sequence"):
        return "stop"
    if raw in ("length", "max_tokens"):
        return "length"
    if raw in ("tool_calls", "function_call", "tool_use"):
        return "tool_calls"
    if raw is None:
        return "tool_calls" if has_tool_calls else "stop"
    return "other"


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"
