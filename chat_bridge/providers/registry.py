"""Adapter 注册表。

本模块将“后端家族名”与“具体 Adapter 实现”解耦：

- 家族名（family）：BackendConfig.family，即 provider 或 backend_id 的小写形式，例如 "openai"。
- Adapter：负责该家族请求/响应格式转换的无状态对象。

未登记的家族一律按 OpenAI 兼容的 custom 端点处理，便于接入新的网关或自建服务。"""

from typing import Mapping

from chat_bridge.providers.anthropic_adapter import AnthropicAdapter
from chat_bridge.providers.base import BackendAdapter
from chat_bridge.providers.custom_adapter import CustomAdapter
from chat_bridge.providers.ollama_adapter import OllamaAdapter
from chat_bridge.providers.openai_adapter import OpenAIAdapter


DEFAULT_FAMILY = "custom"

ADAPTER_REGISTRY: Mapping[str, BackendAdapter] = {
    "openai": OpenAIAdapter(),
    "anthropic": AnthropicAdapter(),
    "ollama": OllamaAdapter(),
    "custom": CustomAdapter(),
}


def get_adapter(family: str) -> BackendAdapter:
    """根据家族名获取 Adapter，名称不区分大小写，未知家族返回 custom。"""

    key = (family or DEFAULT_FAMILY).lower()
    return ADAPTER_REGISTRY.get(key, ADAPTER_REGISTRY[DEFAULT_FAMILY])
