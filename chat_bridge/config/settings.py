"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置。
BackendConfig 由外部目录按调用传入，这里只保存桥接层自身的默认值：
超时、重试策略、各后端默认地址、上下文预算与日志设置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_BRIDGE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class BridgeSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- HTTP ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 重试策略 ----
    retry_base_delay_ms: int = Field(default=1000, ge=0, description="指数退避基础延迟（毫秒）")
    retry_max_attempts: int = Field(default=3, ge=0, description="最大重试次数")
    retry_rate_limit_max_attempts: int = Field(
        default=5,
        ge=0,
        description="最近一次错误为限流时允许的最大重试次数（不低于 retry_max_attempts）",
    )
    retry_max_delay_ms: int = Field(default=30000, ge=0, description="计算出的退避延迟上限（毫秒）")

    # ---- 各后端默认地址 ----
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1",
        description="Anthropic API 基础URL",
    )
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    anthropic_default_max_tokens: int = Field(
        default=1024,
        ge=1,
        description="Anthropic 必填 max_tokens 的默认值",
    )
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama 服务地址")

    # ---- 对话上下文默认值 ----
    context_max_tokens: int = Field(default=4000, ge=1, description="上下文最大 token 预算")
    context_truncation_strategy: Literal["recent", "sliding_window", "priority_based"] = Field(
        default="recent",
        description="超出预算时的截断策略",
    )
    context_min_recent_messages: int = Field(default=2, ge=0, description="截断时保留的最少近期消息数")
    context_preserve_tool_results: bool = Field(default=True, description="截断时是否保留工具结果")

    # ---- 日志 ----
    log_dir: Optional[str] = Field(default=None, description="日志目录，为空时不写文件")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("retry_rate_limit_max_attempts")
    @classmethod
    def validate_rate_limit_attempts(cls, v: int, info) -> int:
        base = info.data.get("retry_max_attempts", 0)
        return max(v, base)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = BridgeSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = BridgeSettings
