"""自定义 OpenAI 兼容端点适配器。

适用于 vLLM、LM Studio、各类网关等实现了 /chat/completions 的服务：

- endpoint 必填，可写基础地址（http://host/v1）或完整地址（.../chat/completions）。
- credential 可选，配置时以 Bearer 方式携带。
"""

from chat_bridge.domain.models import BackendConfig
from chat_bridge.providers.base import join_url
from chat_bridge.providers.openai_adapter import OpenAIAdapter


CHAT_SUFFIX = "/chat/completions"


class CustomAdapter(OpenAIAdapter):
    name = "custom"
    requires_credential = False
    requires_endpoint = True

    def base_url(self, config: BackendConfig) -> str:
        base = (config.endpoint or "").rstrip("/")
        if base.endswith(CHAT_SUFFIX):
            base = base[: -len(CHAT_SUFFIX)]
        return base

    def chat_url(self, config: BackendConfig) -> str:
        return join_url(self.base_url(config), CHAT_SUFFIX)
