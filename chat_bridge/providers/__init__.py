"""LLM 后端适配层。

该包下的模块负责：
- 定义 Adapter 抽象接口 (base)。
- 维护家族名与 Adapter 的对应关系 (registry)。
- 提供各家族的具体实现 (openai_adapter、anthropic_adapter、ollama_adapter、custom_adapter)。
"""

from chat_bridge.domain.models import BackendConfig
from chat_bridge.providers.base import BackendAdapter
from chat_bridge.providers.registry import get_adapter


def create_adapter(config: BackendConfig) -> BackendAdapter:
    """根据 BackendConfig 选择 Adapter，未知家族按 custom 处理。"""

    return get_adapter(config.family)


__all__ = ["BackendAdapter", "create_adapter", "get_adapter"]
