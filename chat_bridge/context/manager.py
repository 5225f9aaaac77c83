"""对话上下文管理。

ConversationContext 持有单个会话的有序消息与工具结果，
每次修改后保证估算 token 数不超过 max_tokens：

1. 按截断策略（recent / sliding_window / priority_based）淘汰消息；
2. 仍超出时淘汰较早的工具结果（preserve_tool_results 时保留最新一条）；
3. 仍超出时进入紧急路径：从最早保留的非 system 消息开始截断内容并追加标记，
   system 消息最后处理。

当 max_tokens 小于不可再缩减的最小值（system 消息 + min_recent_messages 条截断标记）时，
只能尽力满足预算，get_stats() 中的 over_budget 会标出这种情况。

一个实例不支持并发修改，调用方需保证同一会话串行调用 add_message / add_tool_result。
"""

import logging
import math
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from chat_bridge.config.settings import settings
from chat_bridge.context.tokens import (
    CHARS_PER_TOKEN,
    estimate_message_tokens,
    estimate_tokens,
    estimate_tool_result_tokens,
)
from chat_bridge.domain.models import ROLES, ChatMessage, ToolCall, ToolResult, utcnow
from chat_bridge.infrastructure.logging.logger import log_event


TruncationStrategy = Literal["recent", "sliding_window", "priority_based"]
TRUNCATION_STRATEGIES = ("recent", "sliding_window", "priority_based")

TRUNCATION_MARKER = "... (truncated)"
SLIDING_WINDOW_RATIO = 0.6
MESSAGE_PRIORITY = {"system": 3, "tool": 2, "user": 1, "assistant": 1}
SERIALIZATION_VERSION = 1

CODING_SYSTEM_PROMPT = """You are an expert AI coding assistant. You help developers with:
- Writing, reviewing, and debugging code
- Explaining complex programming concepts
- Suggesting best practices and optimizations
- Helping with architecture and design decisions
- Providing code examples and documentation

You have access to tools for reading files, executing commands, and modifying code.
Always be precise, helpful, and focus on practical solutions."""


@dataclass
class ContextConfig:
    """上下文配置。truncation_buffer=0.2 表示截断到预算的 80%，减少频繁截断。"""

    max_tokens: int
    truncation_strategy: TruncationStrategy
    min_recent_messages: int
    preserve_tool_results: bool
    truncation_buffer: float = 0.0
    system_prompt: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be a positive integer")
        if self.truncation_strategy not in TRUNCATION_STRATEGIES:
            raise ValueError(f"Unknown truncation strategy: {self.truncation_strategy!r}")
        if self.min_recent_messages < 0:
            raise ValueError("min_recent_messages must be >= 0")
        if not 0.0 <= self.truncation_buffer < 1.0:
            raise ValueError("truncation_buffer must be in [0, 1)")


def shrink_content(content: str, allowed_tokens: int) -> str:
    """把 content 截短到 allowed_tokens 以内，并追加截断标记。"""

    marker_tokens = estimate_tokens(TRUNCATION_MARKER)
    if allowed_tokens <= marker_tokens:
        return TRUNCATION_MARKER
    n = min(len(content), (allowed_tokens - marker_tokens) * CHARS_PER_TOKEN)
    candidate = content[:n] + TRUNCATION_MARKER
    while n > 0 and estimate_tokens(candidate) > allowed_tokens:
        over = estimate_tokens(candidate) - allowed_tokens
        n = max(0, n - over * CHARS_PER_TOKEN)
        candidate = content[:n] + TRUNCATION_MARKER
    return candidate if n > 0 else TRUNCATION_MARKER


class ConversationContext:
    """单个会话的消息日志与 token 预算管理器。"""

    def __init__(
        self,
        max_tokens: Optional[int] = None,
        truncation_strategy: Optional[TruncationStrategy] = None,
        min_recent_messages: Optional[int] = None,
        preserve_tool_results: Optional[bool] = None,
        truncation_buffer: float = 0.0,
        system_prompt: Optional[str] = None,
    ):
        self._config = ContextConfig(
            max_tokens=max_tokens if max_tokens is not None else settings.context_max_tokens,
            truncation_strategy=truncation_strategy or settings.context_truncation_strategy,
            min_recent_messages=(
                min_recent_messages if min_recent_messages is not None else settings.context_min_recent_messages
            ),
            preserve_tool_results=(
                preserve_tool_results
                if preserve_tool_results is not None
                else settings.context_preserve_tool_results
            ),
            truncation_buffer=truncation_buffer,
            system_prompt=system_prompt,
        )
        self.messages: List[ChatMessage] = []
        self.tool_results: List[ToolResult] = []
        self.created_at: datetime = utcnow()
        self.last_updated: datetime = self.created_at
        self._log_ctx: Dict[str, Any] = {"component": "conversation_context"}
        if system_prompt:
            self.messages.append(ChatMessage(role="system", content=system_prompt))
            self._enforce_budget()

    # ---- 配置只读视图 ----

    @property
    def max_tokens(self) -> int:
        return self._config.max_tokens

    @property
    def truncation_strategy(self) -> TruncationStrategy:
        return self._config.truncation_strategy

    @property
    def min_recent_messages(self) -> int:
        return self._config.min_recent_messages

    @property
    def preserve_tool_results(self) -> bool:
        return self._config.preserve_tool_results

    @property
    def system_prompt(self) -> Optional[str]:
        return self._config.system_prompt

    # ---- 修改操作 ----

    def add_message(self, message: ChatMessage) -> None:
        if message.role not in ROLES:
            raise ValueError(f"Unknown message role: {message.role!r}")
        self.messages.append(message)
        self._touch()
        log_event(
            logging.DEBUG,
            "Message added to context",
            self._log_ctx,
            role=message.role,
            content_length=len(message.content),
            total_messages=len(self.messages),
        )
        self._enforce_budget()

    def add_tool_result(self, result: ToolResult) -> None:
        self.tool_results.append(result)
        self._touch()
        log_event(
            logging.DEBUG,
            "Tool result added to context",
            self._log_ctx,
            tool_name=result.tool_name,
            success=result.success,
            total_results=len(self.tool_results),
        )
        if self.preserve_tool_results:
            self._enforce_budget()

    def update_system_prompt(self, prompt: str) -> None:
        """替换首条 system 消息的内容（不存在则插入到最前面）。"""

        self._config.system_prompt = prompt
        for i, message in enumerate(self.messages):
            if message.role == "system":
                self.messages[i] = replace(message, content=prompt)
                break
        else:
            self.messages.insert(0, ChatMessage(role="system", content=prompt))
        self._touch()
        self._enforce_budget()

    def update_config(self, **changes: Any) -> None:
        """更新配置并立即按新预算重新截断。"""

        unknown = set(changes) - {
            "max_tokens",
            "truncation_strategy",
            "min_recent_messages",
            "preserve_tool_results",
            "truncation_buffer",
        }
        if unknown:
            raise ValueError(f"Unknown context config keys: {sorted(unknown)}")
        old = self._config
        self._config = replace(old, **changes)
        self._touch()
        log_event(
            logging.DEBUG,
            "Configuration updated",
            self._log_ctx,
            old_max_tokens=old.max_tokens,
            new_max_tokens=self._config.max_tokens,
            old_strategy=old.truncation_strategy,
            new_strategy=self._config.truncation_strategy,
        )
        self._enforce_budget()

    def clear(self) -> None:
        """清空消息与工具结果；若配置了 system_prompt 则重新写入。"""

        cleared = (len(self.messages), len(self.tool_results))
        self.messages = []
        self.tool_results = []
        if self._config.system_prompt:
            self.messages.append(ChatMessage(role="system", content=self._config.system_prompt))
        self._touch()
        log_event(
            logging.DEBUG,
            "Context cleared",
            self._log_ctx,
            cleared_messages=cleared[0],
            cleared_tool_results=cleared[1],
        )
        self._enforce_budget()

    # ---- 查询 ----

    def get_token_count(self) -> int:
        tokens = sum(estimate_message_tokens(m) for m in self.messages)
        if self.preserve_tool_results:
            tokens += sum(estimate_tool_result_tokens(r) for r in self.tool_results)
        return tokens

    def get_stats(self) -> Dict[str, Any]:
        token_count = self.get_token_count()
        return {
            "message_count": len(self.messages),
            "tool_result_count": len(self.tool_results),
            "token_count": token_count,
            "over_budget": token_count > self.max_tokens,
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "config": asdict(self._config),
        }

    # ---- 序列化 ----

    def serialize(self) -> Dict[str, Any]:
        """导出完整状态（JSON 安全），由外部调用方负责持久化。"""

        return {
            "version": SERIALIZATION_VERSION,
            "messages": [_message_to_dict(m) for m in self.messages],
            "tool_results": [_tool_result_to_dict(r) for r in self.tool_results],
            "config": asdict(self._config),
            "metadata": {
                "created_at": _iso(self.created_at),
                "last_updated": _iso(self.last_updated),
                "message_count": len(self.messages),
                "token_count": self.get_token_count(),
            },
        }

    @classmethod
    def deserialize(cls, data: Dict[str, Any]) -> "ConversationContext":
        """从 serialize() 的输出恢复上下文；不会重新截断。"""

        cfg = dict(data["config"])
        system_prompt = cfg.pop("system_prompt", None)
        ctx = cls(**cfg)
        ctx._config.system_prompt = system_prompt
        ctx.messages = [_message_from_dict(m) for m in data.get("messages") or []]
        ctx.tool_results = [_tool_result_from_dict(r) for r in data.get("tool_results") or []]
        meta = data.get("metadata") or {}
        if meta.get("created_at"):
            ctx.created_at = _parse_iso(meta["created_at"])
        if meta.get("last_updated"):
            ctx.last_updated = _parse_iso(meta["last_updated"])
        log_event(
            logging.DEBUG,
            "Context deserialized",
            ctx._log_ctx,
            message_count=len(ctx.messages),
            token_count=ctx.get_token_count(),
        )
        return ctx

    def clone(self) -> "ConversationContext":
        return ConversationContext.deserialize(self.serialize())

    # ---- 截断 ----

    def _touch(self) -> None:
        self.last_updated = utcnow()

    def _target_tokens(self) -> int:
        return max(0, math.floor(self.max_tokens * (1 - self._config.truncation_buffer)))

    def _enforce_budget(self) -> None:
        current = self.get_token_count()
        if current <= self.max_tokens:
            return
        target = self._target_tokens()
        log_event(
            logging.INFO,
            "Truncating conversation context",
            self._log_ctx,
            current_tokens=current,
            target_tokens=target,
            strategy=self.truncation_strategy,
            message_count=len(self.messages),
        )
        if not self.preserve_tool_results:
            self.tool_results = []

        if self.truncation_strategy == "sliding_window":
            self._truncate_sliding_window(target)
        elif self.truncation_strategy == "priority_based":
            self._truncate_priority_based(target)
        else:
            self._truncate_recent(target)

        self._drop_old_tool_results(target)
        self._truncate_contents(target)

        final = self.get_token_count()
        log_event(
            logging.INFO if final <= self.max_tokens else logging.WARNING,
            "Context truncation completed",
            self._log_ctx,
            new_message_count=len(self.messages),
            new_token_count=final,
            over_budget=final > self.max_tokens,
        )

    def _protected_indices(self) -> set:
        """system 消息与最近 min_recent_messages 条非 system 消息不可淘汰。"""

        protected = {i for i, m in enumerate(self.messages) if m.role == "system"}
        non_system = [i for i, m in enumerate(self.messages) if m.role != "system"]
        if self.min_recent_messages > 0:
            protected.update(non_system[-self.min_recent_messages:])
        return protected

    def _evict(self, candidates: List[int], target: int) -> None:
        """按 candidates 顺序淘汰消息，直到不超过 target。"""

        tokens = self.get_token_count()
        dropped = set()
        for i in candidates:
            if tokens <= target:
                break
            tokens -= estimate_message_tokens(self.messages[i])
            dropped.add(i)
        if dropped:
            self.messages = [m for i, m in enumerate(self.messages) if i not in dropped]

    def _truncate_recent(self, target: int) -> None:
        protected = self._protected_indices()
        candidates = [i for i, m in enumerate(self.messages) if i not in protected]
        self._evict(candidates, target)

    def _truncate_sliding_window(self, target: int) -> None:
        non_system = [i for i, m in enumerate(self.messages) if m.role != "system"]
        window = max(1, math.floor(len(non_system) * SLIDING_WINDOW_RATIO))
        window = max(window, min(self.min_recent_messages, len(non_system)))
        keep = set(non_system[-window:])
        self.messages = [m for i, m in enumerate(self.messages) if m.role == "system" or i in keep]
        if self.get_token_count() > target:
            self._truncate_recent(target)

    def _truncate_priority_based(self, target: int) -> None:
        protected = self._protected_indices()
        candidates = [i for i in range(len(self.messages)) if i not in protected]
        candidates.sort(key=lambda i: (MESSAGE_PRIORITY.get(self.messages[i].role, 1), i))
        self._evict(candidates, target)

    def _drop_old_tool_results(self, target: int) -> None:
        while self.get_token_count() > target and len(self.tool_results) > 1:
            self.tool_results.pop(0)

    def _truncate_contents(self, target: int) -> None:
        """紧急路径：截断消息内容，从最早的非 system 消息开始，system 消息最后。"""

        order = [i for i, m in enumerate(self.messages) if m.role != "system"]
        order += [i for i, m in enumerate(self.messages) if m.role == "system"]
        for i in order:
            excess = self.get_token_count() - target
            if excess <= 0:
                return
            message = self.messages[i]
            content_tokens = estimate_tokens(message.content)
            if content_tokens == 0:
                continue
            shrunk = shrink_content(message.content, max(0, content_tokens - excess))
            if shrunk != message.content and estimate_tokens(shrunk) < content_tokens:
                self.messages[i] = replace(message, content=shrunk)
                log_event(
                    logging.WARNING,
                    "Truncated message content",
                    self._log_ctx,
                    role=message.role,
                    old_tokens=content_tokens,
                    new_tokens=estimate_tokens(shrunk),
                )


def create_conversation_context(**config: Any) -> ConversationContext:
    return ConversationContext(**config)


def create_coding_conversation_context(**config: Any) -> ConversationContext:
    """面向编码任务的上下文：更大的预算、优先级截断、保留更多近期消息。"""

    coding: Dict[str, Any] = {
        "system_prompt": CODING_SYSTEM_PROMPT,
        "max_tokens": 6000,
        "truncation_strategy": "priority_based",
        "preserve_tool_results": True,
        "min_recent_messages": 4,
    }
    coding.update(config)
    return ConversationContext(**coding)


# ---- 序列化辅助 ----


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    return {
        "role": message.role,
        "content": message.content,
        "tool_call_id": message.tool_call_id,
        "tool_calls": [asdict(c) for c in message.tool_calls] if message.tool_calls else None,
        "timestamp": _iso(message.timestamp),
    }


def _message_from_dict(data: Dict[str, Any]) -> ChatMessage:
    calls = data.get("tool_calls")
    return ChatMessage(
        role=data["role"],
        content=data.get("content") or "",
        tool_call_id=data.get("tool_call_id"),
        tool_calls=[ToolCall(**c) for c in calls] if calls else None,
        timestamp=_parse_iso(data["timestamp"]),
    )


def _tool_result_to_dict(result: ToolResult) -> Dict[str, Any]:
    payload = asdict(result)
    payload["timestamp"] = _iso(result.timestamp)
    return payload


def _tool_result_from_dict(data: Dict[str, Any]) -> ToolResult:
    payload = dict(data)
    payload["timestamp"] = _parse_iso(payload["timestamp"])
    return ToolResult(**payload)
