"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
ChatError 是桥接层唯一对外暴露的错误类型：调用方应根据 kind / retryable 分支处理，
而不是解析 message 文本。
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Literal, Optional


ErrorKind = Literal[
    "invalid_request",
    "invalid_response",
    "invalid_api_key",
    "missing_endpoint",
    "invalid_endpoint",
    "model_not_found",
    "context_length_exceeded",
    "rate_limit_exceeded",
    "quota_exceeded",
    "connection_refused",
    "network_error",
    "timeout",
    "server_error",
    "service_unavailable",
    "overloaded_error",
    "out_of_memory",
    "stream_error",
    "cancelled",
]

# 可重试的错误类型；其余一律立即失败
RETRYABLE_KINDS: FrozenSet[str] = frozenset(
    {
        "network_error",
        "timeout",
        "connection_refused",
        "rate_limit_exceeded",
        "server_error",
        "service_unavailable",
        "overloaded_error",
    }
)


def is_retryable_kind(kind: str) -> bool:
    return kind in RETRYABLE_KINDS


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段。
    """

    def __init__(self, code: str, message: str, http_status: Optional[int] = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ChatError(BusinessError):
    """规范化后的后端调用错误。

    Attributes:
        kind: 规范错误类型（见 ErrorKind），与 code 相同。
        backend_id: 出错的后端标识。
        retryable: 是否允许重试，由 kind 决定。
        retry_after_seconds: 服务端给出的等待时间（秒），可能为空。
        suggested_fix: 面向用户的修复建议。

    构造后不可修改。
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        backend_id: str,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after_seconds: Optional[float] = None,
        suggested_fix: str = "",
    ):
        super().__init__(code=kind, message=message, http_status=http_status)
        self.kind = kind
        self.backend_id = backend_id
        self.retryable = is_retryable_kind(kind) if retryable is None else retryable
        self.retry_after_seconds = retry_after_seconds
        self.suggested_fix = suggested_fix
        self._frozen = True

    def __setattr__(self, name: str, value: Any) -> None:
        # Exception 机制自身会写 __traceback__ / __context__ 等 dunder 属性
        if getattr(self, "_frozen", False) and not name.startswith("__"):
            raise AttributeError(f"ChatError is immutable (cannot set {name!r})")
        super().__setattr__(name, value)

    def __repr__(self) -> str:
        return f"ChatError(kind={self.kind!r}, backend_id={self.backend_id!r}, message={self.message!r})"

    def to_dict(self) -> Dict[str, Any]:
        """渲染为可序列化的字典，供 UI 层展示。"""

        return {
            "kind": self.kind,
            "message": self.message,
            "backend_id": self.backend_id,
            "http_status": self.http_status,
            "retryable": self.retryable,
            "retry_after_seconds": self.retry_after_seconds,
            "suggested_fix": self.suggested_fix,
        }


@dataclass(frozen=True)
class ErrorBody:
    """Adapter 从各家错误 JSON 中提取出的规范三元组。

    分类器只消费该结构，从不直接读取后端原始 JSON。
    """

    status: Optional[int]
    kind_hint: Optional[str]
    message: str
