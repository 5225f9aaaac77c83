"""错误分类器。

把原始失败（HTTP 状态码 + 规范化错误体，或传输层异常）映射成 ChatError：

1. 传输异常：按异常类型与已知文本片段匹配 connection_refused / network_error / timeout / cancelled，
   无法识别的一律视为 network_error。
2. HTTP 响应：先按状态码粗分，再用 Adapter 提取出的 kind_hint 与错误文本细化
   （例如 400 + "context length" -> context_length_exceeded）。
3. retryable 完全由 kind 决定（见 domain.exceptions.RETRYABLE_KINDS）。
4. retry_after_seconds 从 retry-after / retry-after-ms 响应头读取。
5. suggested_fix 按 kind 套用模板，可插入从错误文本中解析出的 token 数、
   凭据环境变量名、模型名等。

本模块是唯一分配错误类型的地方，所有函数都是纯函数。
"""

import asyncio
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional, Tuple

import httpx

from chat_bridge.domain.exceptions import ChatError, ErrorBody


FAMILY_DISPLAY = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "ollama": "Ollama",
    "custom": "custom provider",
}

CREDENTIAL_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

# 404 对这些家族意味着模型不存在，其余家族意味着地址错误
MODEL_SCOPED_404 = {"openai", "ollama"}

# 错误体中的 code / type 字符串 -> 规范类型
HINT_KINDS = {
    "context_length_exceeded": "context_length_exceeded",
    "max_tokens_exceeded": "context_length_exceeded",
    "rate_limit_exceeded": "rate_limit_exceeded",
    "rate_limit_error": "rate_limit_exceeded",
    "invalid_api_key": "invalid_api_key",
    "authentication_error": "invalid_api_key",
    "permission_error": "invalid_api_key",
    "insufficient_quota": "quota_exceeded",
    "quota_exceeded": "quota_exceeded",
    "billing_hard_limit_reached": "quota_exceeded",
    "model_not_found": "model_not_found",
    "overloaded_error": "overloaded_error",
    "server_error": "server_error",
    "internal_server_error": "server_error",
    "api_error": "server_error",
    "service_unavailable": "service_unavailable",
    "timeout": "timeout",
}

_CONTEXT_RE = re.compile(
    r"context[ _](?:length|window)|maximum context|too many tokens|prompt is too long|input is too long"
)
_MAX_TOKENS_RE = (
    re.compile(r"(?:maximum|max|limit)\b[^\d]{0,40}?(\d[\d,]*)"),
    re.compile(r"(\d[\d,]*)\s*(?:tokens?\s*)?(?:maximum|max\b|limit)"),
)
_NUMBER_RE = re.compile(r"\d[\d,]*")


def display_name(family: str) -> str:
    return FAMILY_DISPLAY.get(family, family)


# ---- HTTP 错误 ----


def status_to_kind(status: int, family: str) -> str:
    if status in (401, 403):
        return "invalid_api_key"
    if status == 404:
        return "model_not_found" if family in MODEL_SCOPED_404 else "invalid_endpoint"
    if status == 408:
        return "timeout"
    if status == 429:
        return "rate_limit_exceeded"
    if status == 529:
        return "overloaded_error"
    if status in (502, 503, 504):
        return "service_unavailable"
    if status >= 500:
        return "server_error"
    return "invalid_request"


def refine_kind(kind: str, body: ErrorBody) -> str:
    """用错误体中的 code/type 与文本细化基于状态码的初步判断。"""

    text = (body.message or "").lower()
    hint = (body.kind_hint or "").lower()

    hinted = HINT_KINDS.get(hint)
    if hinted == "rate_limit_exceeded" and ("quota" in text or "billing" in text):
        return "quota_exceeded"
    if hinted:
        return hinted

    if kind == "invalid_api_key":
        return kind
    if _CONTEXT_RE.search(text):
        return "context_length_exceeded"
    if kind == "rate_limit_exceeded" and ("quota" in text or "billing" in text):
        return "quota_exceeded"
    if "out of memory" in text or re.search(r"\boom\b", text):
        return "out_of_memory"
    if "model" in text and "not found" in text:
        return "model_not_found"
    if kind == "invalid_request" and ("api key" in text or "authentication" in text):
        return "invalid_api_key"
    return kind


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    """读取 retry-after（秒或 HTTP 日期）/ retry-after-ms 响应头，单位秒。"""

    if not headers:
        return None
    lowered = {str(k).lower(): v for k, v in headers.items()}
    raw = lowered.get("retry-after")
    if raw:
        raw = str(raw).strip()
        try:
            seconds = float(raw)
            return seconds if seconds >= 0 else None
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
    raw_ms = lowered.get("retry-after-ms")
    if raw_ms:
        try:
            ms = float(str(raw_ms).strip())
            return ms / 1000.0 if ms >= 0 else None
        except ValueError:
            return None
    return None


def classify_http_error(
    backend_id: str,
    family: str,
    status: int,
    body: ErrorBody,
    headers: Optional[Mapping[str, str]] = None,
    model: Optional[str] = None,
) -> ChatError:
    kind = refine_kind(status_to_kind(status, family), body)
    retry_after = parse_retry_after(headers)
    message = _http_message(kind, family, status, body.message, model)
    return ChatError(
        kind=kind,
        message=message,
        backend_id=backend_id,
        http_status=status,
        retry_after_seconds=retry_after,
        suggested_fix=suggest_fix(kind, family, body.message, model=model, retry_after=retry_after),
    )


def _http_message(kind: str, family: str, status: int, detail: str, model: Optional[str]) -> str:
    name = display_name(family)
    if kind == "invalid_api_key":
        head = f"Invalid {name} API key"
    elif kind == "invalid_endpoint":
        head = f"Invalid {name} API endpoint"
    elif kind == "model_not_found":
        head = f"Model {model!r} not found on {name}" if model else f"Model not found on {name}"
    elif kind == "rate_limit_exceeded":
        head = f"{name} rate limit exceeded"
    elif kind == "quota_exceeded":
        head = f"{name} quota exceeded"
    elif kind == "context_length_exceeded":
        head = "Context length exceeded"
    else:
        head = f"{name} request failed"
    detail = (detail or "").strip()
    return f"{head} (HTTP {status}): {detail}" if detail else f"{head} (HTTP {status})"


# ---- 传输异常 ----


def classify_transport_error(
    backend_id: str,
    family: str,
    exc: BaseException,
    model: Optional[str] = None,
) -> ChatError:
    kind = transport_kind(exc)
    name = display_name(family)
    detail = str(exc) or type(exc).__name__
    if kind == "timeout":
        message = f"Request to {name} timed out: {detail}"
    elif kind == "cancelled":
        message = f"Request to {name} was cancelled"
    elif kind == "connection_refused":
        message = f"Connection to {name} refused: {detail}"
    else:
        message = f"Network error while contacting {name}: {detail}"
    return ChatError(
        kind=kind,
        message=message,
        backend_id=backend_id,
        suggested_fix=suggest_fix(kind, family, detail, model=model),
    )


def transport_kind(exc: BaseException) -> str:
    if isinstance(exc, asyncio.CancelledError):
        return "cancelled"
    text = str(exc).lower()
    name = type(exc).__name__
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if "timed out" in text or "timeout" in text:
        return "timeout"
    if name == "AbortError" or "aborted" in text:
        return "cancelled"
    if isinstance(exc, ConnectionRefusedError) or "econnrefused" in text or "connection refused" in text:
        return "connection_refused"
    if "all connection attempts failed" in text or "connect call failed" in text:
        return "connection_refused"
    return "network_error"


# ---- 其余规范错误的构造入口 ----


def invalid_request_error(backend_id: str, detail: str) -> ChatError:
    return ChatError(
        kind="invalid_request",
        message=f"Invalid request: {detail}",
        backend_id=backend_id,
        suggested_fix=suggest_fix("invalid_request", "custom", detail),
    )


def invalid_response_error(backend_id: str, family: str, detail: str) -> ChatError:
    return ChatError(
        kind="invalid_response",
        message=f"Invalid response from {display_name(family)}: {detail}",
        backend_id=backend_id,
        suggested_fix=suggest_fix("invalid_response", family, detail),
    )


def missing_endpoint_error(backend_id: str, family: str) -> ChatError:
    return ChatError(
        kind="missing_endpoint",
        message=f"No endpoint configured for {display_name(family)} backend {backend_id!r}",
        backend_id=backend_id,
        suggested_fix=suggest_fix("missing_endpoint", family, ""),
    )


def missing_credential_error(backend_id: str, family: str) -> ChatError:
    return ChatError(
        kind="invalid_api_key",
        message=f"No API key configured for {display_name(family)} backend {backend_id!r}",
        backend_id=backend_id,
        suggested_fix=suggest_fix("invalid_api_key", family, ""),
    )


def model_missing_error(backend_id: str, family: str, model: str, available: Tuple[str, ...] = ()) -> ChatError:
    detail = f"available: {', '.join(available)}" if available else ""
    return ChatError(
        kind="model_not_found",
        message=f"Model {model!r} not found on {display_name(family)}",
        backend_id=backend_id,
        suggested_fix=suggest_fix("model_not_found", family, detail, model=model),
    )


def stream_error(backend_id: str, family: str, detail: str) -> ChatError:
    return ChatError(
        kind="stream_error",
        message=f"Stream from {display_name(family)} failed: {detail}",
        backend_id=backend_id,
        suggested_fix=suggest_fix("stream_error", family, detail),
    )


def cancelled_error(backend_id: str, family: str) -> ChatError:
    return ChatError(
        kind="cancelled",
        message=f"Request to {display_name(family)} was cancelled",
        backend_id=backend_id,
        suggested_fix=suggest_fix("cancelled", family, ""),
    )


# ---- 修复建议 ----


def parse_token_counts(message: str) -> Tuple[Optional[int], Optional[int]]:
    """从上下文超长的错误文本中解析 (当前 token 数, 最大 token 数)。"""

    text = (message or "").lower()
    maximum = None
    for pattern in _MAX_TOKENS_RE:
        m = pattern.search(text)
        if m:
            maximum = int(m.group(1).replace(",", ""))
            break
    if maximum is None:
        return None, None
    others = [int(n.replace(",", "")) for n in _NUMBER_RE.findall(text)]
    others = [n for n in others if n != maximum]
    return (max(others) if others else None), maximum


def suggest_fix(
    kind: str,
    family: str,
    detail: str,
    model: Optional[str] = None,
    retry_after: Optional[float] = None,
) -> str:
    name = display_name(family)
    env = CREDENTIAL_ENV.get(family)
    if kind == "invalid_api_key":
        where = f"the {env} environment variable or the backend configuration" if env else "the backend configuration"
        return f"Check your {name} API key in {where}. Ensure it is valid and has the necessary permissions."
    if kind == "rate_limit_exceeded":
        wait = f"{retry_after:g} seconds" if retry_after is not None else "a few moments"
        return f"Rate limit exceeded. Wait {wait} before retrying, or upgrade your {name} plan for higher limits."
    if kind == "context_length_exceeded":
        return _context_length_fix(family, detail)
    if kind == "quota_exceeded":
        return f"Your {name} quota has been exceeded. Check your billing settings or upgrade your plan."
    if kind == "model_not_found":
        target = f"model {model!r}" if model else "the specified model"
        if family == "ollama":
            fix = f"Ollama does not have {target}. Pull it with `ollama pull {model or '<model>'}` or pick an installed model."
        else:
            fix = f"{target[0].upper()}{target[1:]} is not available. Check the model name and ensure {name} supports it."
        return f"{fix} ({detail})" if detail else fix
    if kind == "invalid_endpoint":
        return f"The {name} endpoint is invalid. Check the endpoint URL in the backend configuration."
    if kind == "missing_endpoint":
        return f"Configure an endpoint URL for this {name} backend (for example https://host/v1)."
    if kind in ("server_error", "service_unavailable"):
        return f"{name} server error. This is usually temporary; try again in a few moments."
    if kind == "overloaded_error":
        return f"{name} is overloaded right now. Try again shortly or switch to a less busy model."
    if kind == "connection_refused":
        if family == "ollama":
            return "Ollama server is not running. Start it with `ollama serve` or check the endpoint configuration."
        return f"Cannot connect to {name}. Check your network connection and endpoint configuration."
    if kind == "network_error":
        return f"Could not reach {name}. Check your network connection, proxy settings and the endpoint host name."
    if kind == "timeout":
        return "Request timed out. Try reducing the message length or increasing the timeout setting."
    if kind == "out_of_memory":
        return f"{name} ran out of memory. Try a smaller model or reduce the context length."
    if kind == "stream_error":
        return "The response stream was interrupted or malformed. Send the request again."
    if kind == "invalid_response":
        return f"{name} returned a response without usable content. Retry the request or check the model configuration."
    if kind == "invalid_request":
        return "Check that the message list is not empty and every message has a valid role and content."
    if kind == "cancelled":
        return "The request was cancelled before it completed. Send it again if needed."
    return f"Check the {name} documentation for more information about this error."


def _context_length_fix(family: str, detail: str) -> str:
    suggestion = "The message is too long for the model's context window."
    current, maximum = parse_token_counts(detail)
    if current is not None and maximum is not None:
        suggestion += (
            f" Current: {current} tokens, Maximum: {maximum} tokens"
            f" ({current - maximum} tokens over limit)."
        )
    elif maximum is not None:
        suggestion += f" Maximum: {maximum} tokens."
    suggestion += " Try:"
    suggestion += "\n- Shortening your message or conversation history"
    suggestion += "\n- Using a model with a larger context window"
    suggestion += "\n- Breaking your request into smaller parts"
    if family == "openai":
        suggestion += "\n- Consider GPT-4o class models for larger context windows"
    elif family == "anthropic":
        suggestion += "\n- Consider Claude 3 or later models, which support up to 200K tokens"
    elif family == "ollama":
        suggestion += "\n- Check if a larger variant of your model is available, or raise num_ctx"
    return suggestion
