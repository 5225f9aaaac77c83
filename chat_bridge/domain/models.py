"""统一的对话与结果数据模型。

本模块定义了 chat_bridge 在不同后端之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant/tool）。
- ChatRequest: 发给后端的规范化请求（消息列表 + 生成参数）。
- ChatResponse: 从后端解析后的统一响应结果。
- StreamDelta: 流式响应中的单个增量（文本片段 / 工具调用片段 / 结束标记）。
- BackendConfig: 外部目录按调用传入的后端配置，核心层只读不写。

所有 Adapter（providers 包）都只依赖这些模型，
并负责在各自的 wire JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional


# 消息角色（与 OpenAI / Anthropic / Ollama 的 role 字段对应）
Role = Literal["system", "user", "assistant", "tool"]
ROLES = ("system", "user", "assistant", "tool")

FinishReason = Literal["stop", "length", "tool_calls", "other"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass(frozen=True)
class ToolSpec:
    """暴露给模型的工具描述，parameters 为 JSON Schema。"""

    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，既可用于请求，也可出现在 ConversationContext 中。

    - role: 消息角色。
    - content: 纯文本内容；仅当 assistant 只发起工具调用时允许为空。
    - tool_call_id: role 为 "tool" 时，关联某一次工具调用。
    - tool_calls: assistant 发起的工具调用列表。
    - timestamp: 创建时间（UTC）。

    消息追加后不可变，上下文截断时通过 dataclasses.replace 生成新副本。
    """

    role: Role
    content: str
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    Adapter 负责把本结构转换成各家 API 的请求体；
    temperature / max_tokens 为空时使用 BackendConfig 中的值。
    """

    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Optional[List[ToolSpec]] = None


@dataclass
class ChatUsage:
    """后端返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatResponse:
    """一次对话调用的最终结果。"""

    content: str
    finish_reason: FinishReason = "stop"
    usage: ChatUsage = field(default_factory=ChatUsage)
    tool_calls: Optional[List[ToolCall]] = None
    model: Optional[str] = None
    backend_id: Optional[str] = None


@dataclass(frozen=True)
class ToolCallFragment:
    """流式工具调用的一段增量，arguments 通常被拆成多段 JSON 文本。"""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments_fragment: str = ""


@dataclass(frozen=True)
class StreamDelta:
    """流式响应的一个增量单元。

    is_final=True 的增量是最后一个，之后不会再有任何增量。
    """

    text_fragment: Optional[str] = None
    tool_call_fragment: Optional[ToolCallFragment] = None
    is_final: bool = False
    finish_reason: Optional[FinishReason] = None
    usage: Optional[ChatUsage] = None


@dataclass
class ToolResult:
    """工具执行结果，作为上下文的辅助信息保存。"""

    output: str
    tool_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    execution_time: float = 0.0  # 秒
    timestamp: datetime = field(default_factory=utcnow)
    success: bool = True
    error: Optional[str] = None


@dataclass(frozen=True)
class BackendConfig:
    """单个后端的连接配置（由外部目录持有，按值传入）。

    - backend_id: 后端标识，如 "openai"、"my-vllm"。
    - provider: 后端家族（openai/anthropic/ollama/custom），为空时用 backend_id 推断。
    - endpoint: 自定义地址；custom 家族必填。
    - credential: API key。
    - timeout_ms: 单次 HTTP 调用超时，为空时使用全局 http_timeout。
    """

    backend_id: str
    model: str
    provider: Optional[str] = None
    endpoint: Optional[str] = None
    credential: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout_ms: Optional[int] = None

    @property
    def family(self) -> str:
        return (self.provider or self.backend_id or "custom").lower()


@dataclass
class WireRequest:
    """Adapter 生成的 HTTP 请求描述，由 Facade 交给 httpx 发送。"""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    json: Optional[Dict[str, Any]] = None
