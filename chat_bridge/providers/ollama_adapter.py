"""Ollama 本地模型适配器。

- 对话接口：POST {base}/api/chat，流式响应为 NDJSON，每行一个 JSON 对象，"done": true 的行结束流。
- 生成参数放在 options 中（temperature / num_predict）。
- 本地服务通常不需要凭据；配置了 credential 时按 Bearer 携带（常见于反向代理）。
- 健康检查：GET {base}/api/tags，并确认配置的模型已拉取到本地。
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
    WireRequest,
)
from chat_bridge.providers.base import (
    build_usage,
    join_url,
    load_json,
    normalize_finish_reason,
    parse_arguments,
)


DEFAULT_TAG = "latest"


class OllamaAdapter:
    """Ollama 适配器。"""

    name = "ollama"
    stream_format = "ndjson"
    requires_credential = False
    requires_endpoint = False

    def base_url(self, config: BackendConfig) -> str:
        base = (config.endpoint or settings.ollama_base_url).rstrip("/")
        if base.endswith("/api"):
            base = base[: -len("/api")]
        return base

    def headers(self, config: BackendConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.credential:
            headers["Authorization"] = f"Bearer {config.credential}"
        return headers

    # ---- 请求 ----

    def build_request(self, req: ChatRequest, config: BackendConfig, stream: bool = False) -> WireRequest:
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": stream,
        }
        options: Dict[str, Any] = {}
        temperature = req.temperature if req.temperature is not None else config.temperature
        if temperature is not None:
            options["temperature"] = temperature
        max_tokens = req.max_tokens or config.max_tokens
        if max_tokens:
            options["num_predict"] = max_tokens
        if options:
            payload["options"] = options
        if req.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in req.tools
            ]
        return WireRequest(
            method="POST",
            url=join_url(self.base_url(config), "api/chat"),
            headers=self.headers(config),
            json=payload,
        )

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            payload["tool_calls"] = [
                {"function": {"name": call.name, "arguments": call.arguments}}
                for call in message.tool_calls
            ]
        return payload

    # ---- 响应 ----

    def parse_response(self, data: Any, config: BackendConfig) -> ChatResponse:
        if not isinstance(data, dict):
            raise ValueError("response body is not a JSON object")
        msg = data.get("message")
        if not isinstance(msg, dict):
            raise ValueError("response has no message")
        tool_calls = self._parse_tool_calls(msg)
        return ChatResponse(
            content=msg.get("content") or "",
            finish_reason=normalize_finish_reason(data.get("done_reason"), bool(tool_calls)),
            usage=build_usage(data.get("prompt_eval_count"), data.get("eval_count")),
            tool_calls=tool_calls or None,
            model=data.get("model") or config.model,
            backend_id=config.backend_id,
        )

    @staticmethod
    def _parse_tool_calls(msg: Dict[str, Any]) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for idx, call in enumerate(msg.get("tool_calls") or []):
            func = call.get("function") or {}
            calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or "",
                    arguments=parse_arguments(func.get("arguments")),
                )
            )
        return calls

    # ---- 流式 ----

    def parse_stream_frame(self, event: Optional[str], payload: Any) -> Optional[StreamDelta]:
        if not isinstance(payload, dict):
            raise ValueError("stream frame is not a JSON object")
        if payload.get("error"):
            raise ValueError(str(payload["error"]))
        msg = payload.get("message") or {}
        text = msg.get("content") or None
        fragment = None
        # Ollama 一次性返回完整的工具调用，这里取第一个
        raw_calls = msg.get("tool_calls") or []
        if raw_calls:
            func = raw_calls[0].get("function") or {}
            arguments = func.get("arguments")
            fragment = ToolCallFragment(
                index=0,
                id=raw_calls[0].get("id"),
                name=func.get("name"),
                arguments_fragment=arguments if isinstance(arguments, str) else json.dumps(arguments or {}),
            )
        if not payload.get("done"):
            if text is None and fragment is None:
                return None
            return StreamDelta(text_fragment=text, tool_call_fragment=fragment)
        return StreamDelta(
            text_fragment=text,
            tool_call_fragment=fragment,
            is_final=True,
            finish_reason=normalize_finish_reason(payload.get("done_reason"), fragment is not None),
            usage=build_usage(payload.get("prompt_eval_count"), payload.get("eval_count")),
        )

    # ---- 健康检查 ----

    def health_check_request(self, config: BackendConfig) -> WireRequest:
        return WireRequest(method="GET", url=join_url(self.base_url(config), "api/tags"), headers=self.headers(config))

    def find_missing_model(self, data: Any, config: BackendConfig) -> Optional[Tuple[str, ...]]:
        models = (data or {}).get("models") if isinstance(data, dict) else None
        names = tuple(
            str(m.get("name") or m.get("model"))
            for m in (models or [])
            if isinstance(m, dict) and (m.get("name") or m.get("model"))
        )
        if _has_model(names, config.model):
            return None
        return names

    # ---- 错误体 ----

    def parse_error_body(self, status: int, text: str) -> ErrorBody:
        data = load_json(text)
        if isinstance(data, dict) and data.get("error"):
            return ErrorBody(status=status, kind_hint=None, message=str(data["error"]))
        return ErrorBody(status=status, kind_hint=None, message=(text or "").strip())


def _has_model(names: Tuple[str, ...], model: str) -> bool:
    """未写 tag 的模型名等价于 :latest。"""

    wanted = model if ":" in model else f"{model}:{DEFAULT_TAG}"
    for name in names:
        full = name if ":" in name else f"{name}:{DEFAULT_TAG}"
        if full == wanted:
            return True
    return False
