"""Anthropic Messages API 适配器。

与 OpenAI 兼容格式的主要差异：

- system 消息不在 messages 里，而是合并后放到顶层 system 字段。
- 工具结果以 user 角色下的 tool_result 内容块发送，助手的工具调用是 tool_use 内容块。
- messages 需要 user / assistant 交替，连续同角色的消息会被合并。
- max_tokens 必填，未指定时使用 settings.anthropic_default_max_tokens。
- 流式为带 event 名称的 SSE，以 message_stop 事件结束。
"""

from typing import Any, Dict, List, Optional, Tuple

from chat_bridge.config.settings import settings
from chat_bridge.domain.exceptions import ErrorBody
from chat_bridge.domain.models import (
    BackendConfig,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    StreamDelta,
    ToolCall,
    ToolCallFragment,
    WireRequest,
)
from chat_bridge.providers.base import (
    build_usage,
    join_url,
    load_json,
    normalize_finish_reason,
)


class AnthropicAdapter:
    """Anthropic 云服务适配器。"""

    name = "anthropic"
    stream_format = "sse"
    requires_credential = True
    requires_endpoint = False

    def base_url(self, config: BackendConfig) -> str:
        return (config.endpoint or settings.anthropic_base_url).rstrip("/")

    def headers(self, config: BackendConfig) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": settings.anthropic_version,
        }
        if config.credential:
            headers["x-api-key"] = config.credential
        return headers

    # ---- 请求 ----

    def build_request(self, req: ChatRequest, config: BackendConfig, stream: bool = False) -> WireRequest:
        system_parts = [m.content for m in req.messages if m.role == "system" and m.content]
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": self._convert_messages(req.messages),
            "max_tokens": req.max_tokens or config.max_tokens or settings.anthropic_default_max_tokens,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        temperature = req.temperature if req.temperature is not None else config.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        if req.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in req.tools
            ]
        return WireRequest(
            method="POST",
            url=join_url(self.base_url(config), "messages"),
            headers=self.headers(config),
            json=payload,
        )

    def _convert_messages(self, messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                continue
            role = "assistant" if message.role == "assistant" else "user"
            content = self._message_content(message)
            if out and out[-1]["role"] == role:
                out[-1]["content"] = _as_blocks(out[-1]["content"]) + _as_blocks(content)
            else:
                out.append({"role": role, "content": content})
        return out

    @staticmethod
    def _message_content(message: ChatMessage) -> Any:
        if message.role == "tool":
            return [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id or "",
                    "content": message.content,
                }
            ]
        if message.tool_calls:
            blocks: List[Dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
            return blocks
        return message.content

    # ---- 响应 ----

    def parse_response(self, data: Any, config: BackendConfig) -> ChatResponse:
        if not isinstance(data, dict):
            raise ValueError("response body is not a JSON object")
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ValueError("response has no content blocks")
        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                texts.append(block.get("text") or "")
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id") or f"tool_call_{len(tool_calls)}",
                        name=block.get("name") or "",
                        arguments=block.get("input") or {},
                    )
                )
        usage_raw = data.get("usage") or {}
        return ChatResponse(
            content="".join(texts),
            finish_reason=normalize_finish_reason(data.get("stop_reason"), bool(tool_calls)),
            usage=build_usage(usage_raw.get("input_tokens"), usage_raw.get("output_tokens")),
            tool_calls=tool_calls or None,
            model=data.get("model") or config.model,
            backend_id=config.backend_id,
        )

    # ---- 流式 ----

    def parse_stream_frame(self, event: Optional[str], payload: Any) -> Optional[StreamDelta]:
        if not isinstance(payload, dict):
            raise ValueError("stream frame is not a JSON object")
        kind = payload.get("type") or event

        if kind == "error":
            err = payload.get("error") or {}
            raise ValueError(err.get("message") if isinstance(err, dict) else str(err))
        if kind == "message_start":
            usage_raw = (payload.get("message") or {}).get("usage") or {}
            if not usage_raw:
                return None
            return StreamDelta(
                usage=build_usage(usage_raw.get("input_tokens"), usage_raw.get("output_tokens"))
            )
        if kind == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                return StreamDelta(
                    tool_call_fragment=ToolCallFragment(
                        index=payload.get("index", 0),
                        id=block.get("id"),
                        name=block.get("name"),
                    )
                )
            if block.get("type") == "text" and block.get("text"):
                return StreamDelta(text_fragment=block["text"])
            return None
        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta":
                return StreamDelta(text_fragment=delta.get("text") or "")
            if delta.get("type") == "input_json_delta":
                return StreamDelta(
                    tool_call_fragment=ToolCallFragment(
                        index=payload.get("index", 0),
                        arguments_fragment=delta.get("partial_json") or "",
                    )
                )
            return None
        if kind == "message_delta":
            delta = payload.get("delta") or {}
            usage_raw = payload.get("usage") or {}
            stop = delta.get("stop_reason")
            return StreamDelta(
                finish_reason=normalize_finish_reason(stop) if stop else None,
                usage=build_usage(usage_raw.get("input_tokens"), usage_raw.get("output_tokens"))
                if usage_raw
                else None,
            )
        if kind == "message_stop":
            return StreamDelta(is_final=True)
        # ping / content_block_stop
        return None

    # ---- 健康检查 ----

    def health_check_request(self, config: BackendConfig) -> WireRequest:
        return WireRequest(
            method="POST",
            url=join_url(self.base_url(config), "messages"),
            headers=self.headers(config),
            json={
                "model": config.model,
                "max_tokens": 1,
                "messages": [{"role": "user", "content": "Hi"}],
            },
        )

    def find_missing_model(self, data: Any, config: BackendConfig) -> Optional[Tuple[str, ...]]:
        return None

    # ---- 错误体 ----

    def parse_error_body(self, status: int, text: str) -> ErrorBody:
        data = load_json(text)
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                return ErrorBody(
                    status=status,
                    kind_hint=err.get("type"),
                    message=str(err.get("message") or text),
                )
        return ErrorBody(status=status, kind_hint=None, message=(text or "").strip())


def _as_blocks(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return list(content)
    return [{"type": "text", "text": content}] if content else []
