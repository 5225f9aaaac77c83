"""OpenAI Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 OpenAI chat/completions 的请求格式。
3. 将响应 JSON / 流式增量解析为统一的 ChatResponse / StreamDelta（含工具调用）。
4. 从错误体中提取 {status, code/type, message}。

custom 家族沿用同一套 OpenAI 兼容格式，见 custom_adapter。
"""

import json
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
    ToolSpec,
    WireRequest,
)
from chat_bridge.providers.base import (
    build_usage,
    join_url,
    load_json,
    normalize_finish_reason,
    parse_arguments,
)


class OpenAIAdapter:
    """OpenAI 云服务适配器。"""

    name = "openai"
    stream_format = "sse"
    requires_credential = True
    requires_endpoint = False

    def base_url(self, config: BackendConfig) -> str:
        return (config.endpoint or settings.openai_base_url).rstrip("/")

    def chat_url(self, config: BackendConfig) -> str:
        return join_url(self.base_url(config), "chat/completions")

    def headers(self, config: BackendConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.credential:
            headers["Authorization"] = f"Bearer {config.credential}"
        return headers

    # ---- 请求 ----

    def build_request(self, req: ChatRequest, config: BackendConfig, stream: bool = False) -> WireRequest:
        return WireRequest(
            method="POST",
            url=self.chat_url(config),
            headers=self.headers(config),
            json=self._build_payload(req, config, stream),
        )

    def _build_payload(self, req: ChatRequest, config: BackendConfig, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": stream,
        }
        temperature = req.temperature if req.temperature is not None else config.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        max_tokens = req.max_tokens or config.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolSpec) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            payload["content"] = message.content or None
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    # ---- 响应 ----

    def parse_response(self, data: Any, config: BackendConfig) -> ChatResponse:
        if not isinstance(data, dict):
            raise ValueError("response body is not a JSON object")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("response has no choices")
        choice = choices[0] or {}
        msg = choice.get("message") or {}
        tool_calls = self._parse_tool_calls(msg)
        usage_raw = data.get("usage") or {}
        return ChatResponse(
            content=self._content_text(msg.get("content")),
            finish_reason=normalize_finish_reason(choice.get("finish_reason"), bool(tool_calls)),
            usage=build_usage(
                usage_raw.get("prompt_tokens"),
                usage_raw.get("completion_tokens"),
                usage_raw.get("total_tokens"),
            ),
            tool_calls=tool_calls or None,
            model=data.get("model") or config.model,
            backend_id=config.backend_id,
        )

    @staticmethod
    def _content_text(content: Any) -> str:
        # 部分兼容服务端把 content 返回为 [{"type": "text", "text": ...}]
        if isinstance(content, list):
            return "".join(part.get("text", "") for part in content if isinstance(part, dict))
        return content or ""

    @staticmethod
    def _parse_tool_calls(msg: Dict[str, Any]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for idx, call in enumerate(msg.get("tool_calls") or []):
            func = call.get("function") or {}
            calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or call.get("name") or "",
                    arguments=parse_arguments(func.get("arguments")),
                )
            )
        # 旧版接口仍可能返回 function_call 字段
        function_call = msg.get("function_call")
        if function_call:
            calls.append(
                ToolCall(
                    id=function_call.get("id") or "function_call",
                    name=function_call.get("name") or "",
                    arguments=parse_arguments(function_call.get("arguments")),
                )
            )
        return calls

    # ---- 流式 ----

    def parse_stream_frame(self, event: Optional[str], payload: Any) -> Optional[StreamDelta]:
        if not isinstance(payload, dict):
            raise ValueError("stream frame is not a JSON object")
        if payload.get("error"):
            err = payload["error"]
            raise ValueError(err.get("message") if isinstance(err, dict) else str(err))
        usage_raw = payload.get("usage")
        usage = None
        if usage_raw:
            usage = build_usage(
                usage_raw.get("prompt_tokens"),
                usage_raw.get("completion_tokens"),
                usage_raw.get("total_tokens"),
            )
        choices = payload.get("choices") or []
        if not choices:
            return StreamDelta(usage=usage) if usage else None
        ch = choices[0] or {}
        delta = ch.get("delta") or {}
        text = self._content_text(delta.get("content")) or None
        fragment = None
        raw_calls = delta.get("tool_calls") or []
        if raw_calls:
            call = raw_calls[0]
            func = call.get("function") or {}
            fragment = ToolCallFragment(
                index=call.get("index", 0),
                id=call.get("id"),
                name=func.get("name"),
                arguments_fragment=func.get("arguments") or "",
            )
        raw_finish = ch.get("finish_reason")
        finish = normalize_finish_reason(raw_finish) if raw_finish else None
        if text is None and fragment is None and finish is None and usage is None:
            return None
        return StreamDelta(text_fragment=text, tool_call_fragment=fragment, finish_reason=finish, usage=usage)

    # ---- 健康检查 ----

    def health_check_request(self, config: BackendConfig) -> WireRequest:
        return WireRequest(method="GET", url=join_url(self.base_url(config), "models"), headers=self.headers(config))

    def find_missing_model(self, data: Any, config: BackendConfig) -> Optional[Tuple[str, ...]]:
        return None

    # ---- 错误体 ----

    def parse_error_body(self, status: int, text: str) -> ErrorBody:
        data = load_json(text)
        if isinstance(data, dict):
            err = data.get("error", data)
            if isinstance(err, dict):
                hint = err.get("code") or err.get("type")
                message = err.get("message") or text
                return ErrorBody(status=status, kind_hint=str(hint) if hint else None, message=str(message))
            if isinstance(err, str):
                return ErrorBody(status=status, kind_hint=None, message=err)
        return ErrorBody(status=status, kind_hint=None, message=(text or "").strip())
