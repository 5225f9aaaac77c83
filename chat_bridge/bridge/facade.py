"""对外调度入口 ChatBridge。

一次调用的流程：

1. 校验请求形状（消息非空、角色合法、内容非空），失败直接抛 invalid_request，不发起网络请求。
2. 按 BackendConfig 选择 Adapter，检查 endpoint / 凭据是否齐全。
3. 发送请求；HTTP 错误或传输异常交给 classifier 分类，再由 RetryScheduler 决定是否退避重试。
4. 成功后解析并校验响应（必须有文本或工具调用，否则 invalid_response）。

流式调用只对"打开流"这一步做重试；开始读取后出现的解码错误直接抛出。

取消：调用方可传入 asyncio.Event，置位后立即中断进行中的请求、流读取或退避等待，
不再重试，并抛出 kind="cancelled" 的 ChatError。任务自身被 cancel() 时 CancelledError 原样传播。
"""

import asyncio
import inspect
import logging
import random
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import httpx

from chat_bridge.bridge.classifier import (
    cancelled_error,
    classify_http_error,
    classify_transport_error,
    invalid_request_error,
    invalid_response_error,
    missing_credential_error,
    missing_endpoint_error,
    model_missing_error,
)
from chat_bridge.bridge.retry import RetryPolicy, RetryScheduler, Sleep
from chat_bridge.bridge.streaming import StreamAccumulator, decode_stream
from chat_bridge.config.settings import settings
from chat_bridge.domain.exceptions import ChatError
from chat_bridge.domain.models import (
    ROLES,
    BackendConfig,
    ChatRequest,
    ChatResponse,
    StreamDelta,
    WireRequest,
)
from chat_bridge.infrastructure.logging.logger import log_event
from chat_bridge.providers import create_adapter
from chat_bridge.providers.base import MALFORMED_ERRORS, BackendAdapter, load_json


DeltaCallback = Callable[[StreamDelta], Union[None, Awaitable[None]]]


class ChatBridge:
    """统一的 LLM 调用入口，实例之间、调用之间不共享可变状态。"""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy.from_settings()
        self._transport = transport
        self._sleep = sleep
        self._rand = rand

    # ---- 对外接口 ----

    async def send(
        self,
        request: ChatRequest,
        config: BackendConfig,
        cancel: Optional[asyncio.Event] = None,
    ) -> ChatResponse:
        log_ctx = self._log_ctx("send", config)
        started = time.monotonic()
        try:
            adapter = self._prepare(request, config)
            scheduler = self._scheduler(cancel, config)
            async with self._client(config) as client:
                while True:
                    try:
                        response = await self._attempt(client, adapter, request, config, cancel)
                        break
                    except ChatError as error:
                        if not await self._retry(scheduler, error, log_ctx):
                            raise
        except ChatError as error:
            self._log_failure(error, log_ctx)
            raise
        log_event(
            logging.INFO,
            "chat request completed",
            log_ctx,
            finish_reason=response.finish_reason,
            total_tokens=response.usage.total_tokens,
            retries=scheduler.attempt,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return response

    async def stream(
        self,
        request: ChatRequest,
        config: BackendConfig,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamDelta]:
        """流式调用，按到达顺序产出 StreamDelta，最后一个 is_final=True。"""

        log_ctx = self._log_ctx("stream", config)
        try:
            adapter = self._prepare(request, config)
            scheduler = self._scheduler(cancel, config)
            wire = adapter.build_request(request, config, stream=True)
            async with self._client(config) as client:
                response = await self._open_stream(client, adapter, wire, config, cancel, scheduler, log_ctx)
                try:
                    chunks = self._read_chunks(response, cancel, config)
                    async for delta in decode_stream(chunks, adapter, config.backend_id):
                        yield delta
                finally:
                    await response.aclose()
        except ChatError as error:
            self._log_failure(error, log_ctx)
            raise
        log_event(logging.INFO, "chat stream completed", log_ctx, retries=scheduler.attempt)

    async def stream_send(
        self,
        request: ChatRequest,
        config: BackendConfig,
        on_delta: DeltaCallback,
        cancel: Optional[asyncio.Event] = None,
    ) -> ChatResponse:
        """流式调用并逐个回调 on_delta（同步或异步函数均可），返回拼装后的完整响应。"""

        acc = StreamAccumulator(model=config.model, backend_id=config.backend_id)
        async for delta in self.stream(request, config, cancel):
            acc.add(delta)
            result = on_delta(delta)
            if inspect.isawaitable(result):
                await result
        return acc.result()

    async def validate_connection(
        self,
        config: BackendConfig,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        """对后端做一次轻量探测，失败时抛出具体的 ChatError，不做重试。"""

        log_ctx = self._log_ctx("validate_connection", config)
        try:
            adapter = create_adapter(config)
            self._check_backend(adapter, config)
            wire = adapter.health_check_request(config)
            async with self._client(config) as client:
                response = await self._request(client, adapter, wire, config, cancel)
                if response.status_code >= 400:
                    raise self._http_error(adapter, config, response)
                try:
                    available = adapter.find_missing_model(load_json(response.text), config)
                except MALFORMED_ERRORS as exc:
                    raise invalid_response_error(config.backend_id, adapter.name, str(exc)) from exc
                if available is not None:
                    raise model_missing_error(config.backend_id, adapter.name, config.model, available)
        except ChatError as error:
            self._log_failure(error, log_ctx)
            raise
        log_event(logging.INFO, "backend connection ok", log_ctx)

    # ---- 请求准备 ----

    def _prepare(self, request: ChatRequest, config: BackendConfig) -> BackendAdapter:
        self._validate_request(request, config)
        adapter = create_adapter(config)
        self._check_backend(adapter, config)
        return adapter

    @staticmethod
    def _validate_request(request: ChatRequest, config: BackendConfig) -> None:
        if not request.messages:
            raise invalid_request_error(config.backend_id, "message list is empty")
        for idx, message in enumerate(request.messages):
            if message.role not in ROLES:
                raise invalid_request_error(
                    config.backend_id, f"message {idx} has unknown role {message.role!r}"
                )
            if message.role == "assistant" and message.tool_calls:
                continue
            if not isinstance(message.content, str) or not message.content.strip():
                raise invalid_request_error(config.backend_id, f"message {idx} ({message.role}) has empty content")
        if not config.model:
            raise invalid_request_error(config.backend_id, "no model configured")

    @staticmethod
    def _check_backend(adapter: BackendAdapter, config: BackendConfig) -> None:
        if adapter.requires_endpoint and not config.endpoint:
            raise missing_endpoint_error(config.backend_id, adapter.name)
        if adapter.requires_credential and not config.credential:
            raise missing_credential_error(config.backend_id, adapter.name)

    def _client(self, config: BackendConfig) -> httpx.AsyncClient:
        timeout = config.timeout_ms / 1000.0 if config.timeout_ms else settings.http_timeout
        return httpx.AsyncClient(timeout=timeout, trust_env=False, transport=self._transport)

    def _scheduler(self, cancel: Optional[asyncio.Event], config: BackendConfig) -> RetryScheduler:
        async def sleep(seconds: float) -> None:
            await self._guard(self._sleep(seconds), cancel, config)

        return RetryScheduler(self.policy, sleep=sleep, rand=self._rand)

    # ---- 单次尝试 ----

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        adapter: BackendAdapter,
        request: ChatRequest,
        config: BackendConfig,
        cancel: Optional[asyncio.Event],
    ) -> ChatResponse:
        wire = adapter.build_request(request, config)
        response = await self._request(client, adapter, wire, config, cancel)
        if response.status_code >= 400:
            raise self._http_error(adapter, config, response)
        try:
            parsed = adapter.parse_response(response.json(), config)
        except MALFORMED_ERRORS as exc:
            raise invalid_response_error(config.backend_id, adapter.name, str(exc)) from exc
        if not parsed.content and not parsed.tool_calls:
            raise invalid_response_error(config.backend_id, adapter.name, "response has neither content nor tool calls")
        return parsed

    async def _request(
        self,
        client: httpx.AsyncClient,
        adapter: BackendAdapter,
        wire: WireRequest,
        config: BackendConfig,
        cancel: Optional[asyncio.Event],
    ) -> httpx.Response:
        try:
            return await self._guard(
                client.request(wire.method, wire.url, headers=wire.headers, json=wire.json),
                cancel,
                config,
            )
        except (httpx.HTTPError, OSError) as exc:
            raise classify_transport_error(config.backend_id, adapter.name, exc, model=config.model) from exc

    async def _open_stream(
        self,
        client: httpx.AsyncClient,
        adapter: BackendAdapter,
        wire: WireRequest,
        config: BackendConfig,
        cancel: Optional[asyncio.Event],
        scheduler: RetryScheduler,
        log_ctx: dict,
    ) -> httpx.Response:
        while True:
            try:
                req = client.build_request(wire.method, wire.url, headers=wire.headers, json=wire.json)
                try:
                    response = await self._guard(client.send(req, stream=True), cancel, config)
                except (httpx.HTTPError, OSError) as exc:
                    raise classify_transport_error(
                        config.backend_id, adapter.name, exc, model=config.model
                    ) from exc
                if response.status_code < 400:
                    return response
                try:
                    await self._guard(response.aread(), cancel, config)
                finally:
                    await response.aclose()
                raise self._http_error(adapter, config, response)
            except ChatError as error:
                if not await self._retry(scheduler, error, log_ctx):
                    raise

    async def _read_chunks(
        self,
        response: httpx.Response,
        cancel: Optional[asyncio.Event],
        config: BackendConfig,
    ) -> AsyncIterator[bytes]:
        chunks = response.aiter_bytes().__aiter__()
        while True:
            chunk = await self._guard(_next_chunk(chunks), cancel, config)
            if chunk is None:
                return
            yield chunk

    def _http_error(self, adapter: BackendAdapter, config: BackendConfig, response: httpx.Response) -> ChatError:
        body = adapter.parse_error_body(response.status_code, response.text)
        return classify_http_error(
            config.backend_id,
            adapter.name,
            response.status_code,
            body,
            headers=response.headers,
            model=config.model,
        )

    # ---- 重试与取消 ----

    async def _retry(self, scheduler: RetryScheduler, error: ChatError, log_ctx: dict) -> bool:
        if not scheduler.should_retry(error):
            return False
        log_event(
            logging.WARNING,
            "chat request failed, retrying",
            log_ctx,
            kind=error.kind,
            http_status=error.http_status,
            attempt=scheduler.attempt + 1,
            retry_after=error.retry_after_seconds,
        )
        return await scheduler.backoff(error)

    async def _guard(self, aw: Awaitable[Any], cancel: Optional[asyncio.Event], config: BackendConfig) -> Any:
        """等待 aw 完成；cancel 先被置位时中断 aw 并抛出 cancelled。"""

        if cancel is None:
            return await aw
        if cancel.is_set():
            if inspect.iscoroutine(aw):
                aw.close()
            raise cancelled_error(config.backend_id, config.family)
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise cancelled_error(config.backend_id, config.family)

    # ---- 日志 ----

    @staticmethod
    def _log_ctx(op: str, config: BackendConfig) -> dict:
        return {
            "op": op,
            "backend_id": config.backend_id,
            "family": config.family,
            "model": config.model,
        }

    @staticmethod
    def _log_failure(error: ChatError, log_ctx: dict) -> None:
        log_event(
            logging.ERROR,
            "chat request failed",
            log_ctx,
            kind=error.kind,
            http_status=error.http_status,
            retryable=error.retryable,
            error=error.message,
        )


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None
