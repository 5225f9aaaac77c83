import asyncio
import json
import time

import httpx
import pytest

from chat_bridge.bridge.facade import ChatBridge
from chat_bridge.bridge.retry import RetryPolicy
from chat_bridge.domain.exceptions import ChatError
from chat_bridge.domain.models import BackendConfig, ChatMessage, ChatRequest

pytestmark = pytest.mark.asyncio

OPENAI = BackendConfig(backend_id="openai", model="gpt-4o", credential="sk-test")


def _ok(text="hello"):
    return httpx.Response(
        200,
        json={
            "model": "gpt-4o",
            "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 2, "completion_tokens": 1, "total_tokens": 3},
        },
    )


def _req(text="hi"):
    return ChatRequest(messages=[ChatMessage(role="user", content=text)])


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class Backend:
    """按顺序返回预设响应并记录收到的请求。"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _bridge(backend, sleep=None, **policy):
    return ChatBridge(
        policy=RetryPolicy(**policy),
        transport=httpx.MockTransport(backend),
        sleep=sleep or SleepRecorder(),
        rand=lambda: 0.0,
    )


# ---- send ----


async def test_send_success():
    backend = Backend(_ok("hello"))
    resp = await _bridge(backend).send(_req(), OPENAI)
    assert resp.content == "hello"
    assert resp.usage.total_tokens == 3
    assert len(backend.requests) == 1
    sent = json.loads(backend.requests[0].content)
    assert sent["messages"] == [{"role": "user", "content": "hi"}]
    assert backend.requests[0].headers["authorization"] == "Bearer sk-test"


async def test_invalid_request_makes_no_call():
    backend = Backend(_ok())
    bridge = _bridge(backend)
    with pytest.raises(ChatError) as ei:
        await bridge.send(ChatRequest(messages=[]), OPENAI)
    assert ei.value.kind == "invalid_request"
    with pytest.raises(ChatError) as ei:
        await bridge.send(ChatRequest(messages=[ChatMessage(role="user", content="  ")]), OPENAI)
    assert ei.value.kind == "invalid_request"
    assert backend.requests == []


async def test_missing_credential_makes_no_call():
    backend = Backend(_ok())
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).send(_req(), BackendConfig(backend_id="openai", model="gpt-4o"))
    assert ei.value.kind == "invalid_api_key"
    assert backend.requests == []


async def test_non_retryable_error_single_call():
    backend = Backend(httpx.Response(401, json={"error": {"message": "bad key", "code": "invalid_api_key"}}))
    sleep = SleepRecorder()
    with pytest.raises(ChatError) as ei:
        await _bridge(backend, sleep).send(_req(), OPENAI)
    assert ei.value.kind == "invalid_api_key"
    assert "Invalid OpenAI API key" in ei.value.message
    assert len(backend.requests) == 1
    assert sleep.calls == []


async def test_retryable_errors_then_success():
    backend = Backend(httpx.Response(500, text="boom"), httpx.Response(503, text="down"), _ok("finally"))
    sleep = SleepRecorder()
    resp = await _bridge(backend, sleep).send(_req(), OPENAI)
    assert resp.content == "finally"
    assert len(backend.requests) == 3
    assert sleep.calls == [1.0, 2.0]
    assert sum(sleep.calls) >= 3.0


async def test_retry_after_header_is_honored():
    backend = Backend(httpx.Response(429, headers={"retry-after": "2"}, json={"error": {"message": "slow down"}}), _ok())
    sleep = SleepRecorder()
    resp = await _bridge(backend, sleep).send(_req(), OPENAI)
    assert resp.content == "hello"
    assert len(backend.requests) == 2
    assert sleep.calls == [2.0]


async def test_retry_after_real_time():
    backend = Backend(httpx.Response(429, headers={"retry-after": "2"}, text="rate limited"), _ok("done"))
    bridge = ChatBridge(policy=RetryPolicy(), transport=httpx.MockTransport(backend))
    started = time.monotonic()
    resp = await bridge.send(_req(), OPENAI)
    assert resp.content == "done"
    assert len(backend.requests) == 2
    assert time.monotonic() - started >= 2.0


async def test_attempts_exhausted_surfaces_last_error():
    backend = Backend(httpx.ConnectError("getaddrinfo ENOTFOUND api.openai.com"))
    sleep = SleepRecorder()
    with pytest.raises(ChatError) as ei:
        await _bridge(backend, sleep, max_attempts=2).send(_req(), OPENAI)
    assert ei.value.kind == "network_error"
    assert len(backend.requests) == 3
    assert len(sleep.calls) == 2


async def test_empty_response_is_invalid_response():
    backend = Backend(_ok(""))
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).send(_req(), OPENAI)
    assert ei.value.kind == "invalid_response"
    assert ei.value.retryable is False
    assert len(backend.requests) == 1


async def test_non_json_body_is_invalid_response():
    backend = Backend(httpx.Response(200, text="<html>gateway</html>"))
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).send(_req(), OPENAI)
    assert ei.value.kind == "invalid_response"


@pytest.mark.parametrize(
    "body",
    [
        {"choices": [{"message": "x"}]},
        {"choices": [{"message": {"content": "hi"}}], "usage": [1, 2]},
        {"choices": [{"message": {"content": "", "tool_calls": ["read_file"]}}]},
    ],
)
async def test_wrong_shape_body_is_invalid_response(body):
    backend = Backend(httpx.Response(200, json=body))
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).send(_req(), OPENAI)
    assert ei.value.kind == "invalid_response"
    assert len(backend.requests) == 1


async def test_context_length_error_not_retried():
    body = {
        "error": {
            "message": "This model's maximum context length is 4097 tokens. However, you requested 5000 tokens.",
            "code": "context_length_exceeded",
        }
    }
    backend = Backend(httpx.Response(400, json=body))
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).send(_req(), OPENAI)
    assert ei.value.kind == "context_length_exceeded"
    assert "5000" in ei.value.suggested_fix and "4097" in ei.value.suggested_fix
    assert len(backend.requests) == 1


async def test_concurrent_calls_do_not_block_each_other():
    async def handler(request):
        payload = json.loads(request.content)
        if payload["model"] == "slow":
            await asyncio.sleep(0.3)
        return _ok(payload["model"])

    bridge = ChatBridge(policy=RetryPolicy(), transport=httpx.MockTransport(handler))
    finished = []

    async def call(model):
        cfg = BackendConfig(backend_id="openai", model=model, credential="k")
        resp = await bridge.send(_req(), cfg)
        finished.append(resp.content)

    await asyncio.gather(call("slow"), call("fast"))
    assert finished == ["fast", "slow"]


# ---- 取消 ----


async def test_cancel_before_send():
    backend = Backend(_ok())
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).send(_req(), OPENAI, cancel=cancel)
    assert ei.value.kind == "cancelled"
    assert backend.requests == []


async def test_cancel_aborts_in_flight_request():
    async def handler(request):
        await asyncio.sleep(10)
        return _ok()

    cancel = asyncio.Event()
    bridge = ChatBridge(policy=RetryPolicy(), transport=httpx.MockTransport(handler))
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    started = time.monotonic()
    with pytest.raises(ChatError) as ei:
        await bridge.send(_req(), OPENAI, cancel=cancel)
    assert ei.value.kind == "cancelled"
    assert time.monotonic() - started < 5


async def test_cancel_during_backoff_stops_retries():
    backend = Backend(httpx.Response(500, text="boom"))
    cancel = asyncio.Event()
    bridge = ChatBridge(
        policy=RetryPolicy(base_delay_ms=10000),
        transport=httpx.MockTransport(backend),
    )
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    with pytest.raises(ChatError) as ei:
        await bridge.send(_req(), OPENAI, cancel=cancel)
    assert ei.value.kind == "cancelled"
    assert len(backend.requests) == 1


# ---- 流式 ----


def _sse(*texts, done=True):
    body = "".join(
        "data: %s\n\n" % json.dumps({"choices": [{"delta": {"content": t}, "finish_reason": None}]})
        for t in texts
    )
    body += "data: %s\n\n" % json.dumps({"choices": [{"delta": {}, "finish_reason": "stop"}]})
    if done:
        body += "data: [DONE]\n\n"
    return body


async def test_stream_send_delivers_deltas_in_order():
    backend = Backend(httpx.Response(200, text=_sse("Hel", "lo")))
    seen = []
    resp = await _bridge(backend).stream_send(_req(), OPENAI, seen.append)
    assert "".join(d.text_fragment or "" for d in seen) == "Hello"
    assert seen[-1].is_final
    assert [d.is_final for d in seen].count(True) == 1
    assert resp.content == "Hello"
    assert resp.finish_reason == "stop"
    assert json.loads(backend.requests[0].content)["stream"] is True


async def test_stream_send_accepts_async_callback():
    backend = Backend(httpx.Response(200, text=_sse("a", "b")))
    seen = []

    async def on_delta(delta):
        seen.append(delta)

    resp = await _bridge(backend).stream_send(_req(), OPENAI, on_delta)
    assert resp.content == "ab"
    assert seen[-1].is_final


async def test_stream_open_is_retried():
    backend = Backend(httpx.Response(503, text="unavailable"), httpx.Response(200, text=_sse("ok")))
    sleep = SleepRecorder()
    resp = await _bridge(backend, sleep).stream_send(_req(), OPENAI, lambda d: None)
    assert resp.content == "ok"
    assert len(backend.requests) == 2
    assert sleep.calls == [1.0]


async def test_stream_decode_failure_is_not_retried():
    backend = Backend(httpx.Response(200, text="data: {broken\n\n"))
    sleep = SleepRecorder()
    with pytest.raises(ChatError) as ei:
        await _bridge(backend, sleep).stream_send(_req(), OPENAI, lambda d: None)
    assert ei.value.kind == "stream_error"
    assert len(backend.requests) == 1
    assert sleep.calls == []


async def test_stream_cancel_mid_stream_raises_cancelled():
    async def body():
        yield _sse("first", done=False).encode()
        await asyncio.sleep(0.01)
        yield _sse("second").encode()

    backend = Backend(httpx.Response(200, content=body()))
    cancel = asyncio.Event()
    seen = []

    def on_delta(delta):
        seen.append(delta)
        cancel.set()

    with pytest.raises(ChatError) as ei:
        await _bridge(backend).stream_send(_req(), OPENAI, on_delta, cancel=cancel)
    assert ei.value.kind == "cancelled"
    assert not any(d.is_final for d in seen)


async def test_stream_ollama_ndjson():
    lines = [
        {"message": {"role": "assistant", "content": "Hi"}, "done": False},
        {"message": {"role": "assistant", "content": " there"}, "done": True, "prompt_eval_count": 2, "eval_count": 2},
    ]
    backend = Backend(httpx.Response(200, text="\n".join(json.dumps(line) for line in lines) + "\n"))
    cfg = BackendConfig(backend_id="ollama", model="llama3")
    resp = await _bridge(backend).stream_send(_req(), cfg, lambda d: None)
    assert resp.content == "Hi there"
    assert resp.usage.total_tokens == 4
    assert str(backend.requests[0].url) == "http://localhost:11434/api/chat"


# ---- validate_connection ----


async def test_validate_connection_ok():
    backend = Backend(httpx.Response(200, json={"data": []}))
    await _bridge(backend).validate_connection(OPENAI)
    assert str(backend.requests[0].url) == "https://api.openai.com/v1/models"


async def test_validate_connection_invalid_openai_key():
    backend = Backend(httpx.Response(401, json={"error": {"message": "Incorrect API key"}}))
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).validate_connection(OPENAI)
    assert ei.value.kind == "invalid_api_key"
    assert "Invalid OpenAI API key" in ei.value.message


async def test_validate_connection_anthropic_bad_endpoint():
    backend = Backend(httpx.Response(404, text="Not Found"))
    cfg = BackendConfig(backend_id="anthropic", model="claude-3-haiku", credential="k", endpoint="https://proxy/x")
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).validate_connection(cfg)
    assert ei.value.kind == "invalid_endpoint"
    assert "Invalid Anthropic API endpoint" in ei.value.message
    assert backend.requests[0].headers["anthropic-version"] == "2023-06-01"


async def test_validate_connection_ollama_missing_model():
    backend = Backend(httpx.Response(200, json={"models": [{"name": "mistral:latest"}]}))
    cfg = BackendConfig(backend_id="ollama", model="llama3")
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).validate_connection(cfg)
    assert ei.value.kind == "model_not_found"
    assert "llama3" in ei.value.message


async def test_validate_connection_ollama_wrong_shape_tags():
    backend = Backend(httpx.Response(200, json={"models": 3}))
    cfg = BackendConfig(backend_id="ollama", model="llama3")
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).validate_connection(cfg)
    assert ei.value.kind == "invalid_response"


async def test_validate_connection_custom_without_endpoint():
    backend = Backend(_ok())
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).validate_connection(BackendConfig(backend_id="my-gateway", model="m"))
    assert ei.value.kind == "missing_endpoint"
    assert "No endpoint configured" in ei.value.message
    assert backend.requests == []


async def test_validate_connection_timeout_not_retried():
    backend = Backend(httpx.ConnectTimeout("timed out"))
    sleep = SleepRecorder()
    with pytest.raises(ChatError) as ei:
        await _bridge(backend, sleep).validate_connection(OPENAI)
    assert ei.value.kind == "timeout"
    assert "timed out" in ei.value.message
    assert len(backend.requests) == 1
    assert sleep.calls == []


async def test_validate_connection_network_error():
    backend = Backend(httpx.ConnectError("getaddrinfo ENOTFOUND api.openai.com"))
    with pytest.raises(ChatError) as ei:
        await _bridge(backend).validate_connection(OPENAI)
    assert ei.value.kind == "network_error"
    assert "Network error" in ei.value.message
