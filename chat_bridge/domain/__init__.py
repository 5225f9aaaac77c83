"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResponse / BackendConfig 模型。
- exceptions: ChatError 与规范错误类型定义。
"""
