"""重试调度。

每次逻辑调用持有一个 RetryScheduler，记录已重试次数与累计等待时间：

- 不可重试的错误立即返回，不做任何等待（鉴权、参数错误必须快速失败）。
- 最近一次错误为 rate_limit_exceeded 时，允许的重试次数提升到 rate_limit_max_attempts。
- 等待时间优先使用服务端 retry-after，否则为 base_delay_ms * 2**attempt 加 [0, base_delay_ms) 的抖动。

等待通过 asyncio.sleep 挂起当前协程，不会阻塞其他并发调用。
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from chat_bridge.config.settings import settings
from chat_bridge.domain.exceptions import ChatError


Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """退避参数，默认值来自 settings，可按 ChatBridge 实例覆盖。"""

    base_delay_ms: int = 1000
    max_attempts: int = 3
    rate_limit_max_attempts: int = 5
    max_delay_ms: int = 30000

    @classmethod
    def from_settings(cls, cfg=settings) -> "RetryPolicy":
        return cls(
            base_delay_ms=cfg.retry_base_delay_ms,
            max_attempts=cfg.retry_max_attempts,
            rate_limit_max_attempts=cfg.retry_rate_limit_max_attempts,
            max_delay_ms=cfg.retry_max_delay_ms,
        )

    def attempts_for(self, error: ChatError) -> int:
        if error.kind == "rate_limit_exceeded":
            return max(self.max_attempts, self.rate_limit_max_attempts)
        return self.max_attempts


class RetryScheduler:
    """单次逻辑调用的重试状态。"""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy.from_settings()
        self.attempt = 0
        self.elapsed_wait_ms = 0.0
        self._sleep = sleep
        self._rand = rand

    def should_retry(self, error: ChatError) -> bool:
        if not error.retryable:
            return False
        return self.attempt < self.policy.attempts_for(error)

    def next_delay_ms(self, error: ChatError) -> float:
        if error.retry_after_seconds is not None:
            return error.retry_after_seconds * 1000.0
        base = self.policy.base_delay_ms
        delay = base * (2 ** self.attempt) + self._rand() * base
        return min(delay, float(self.policy.max_delay_ms))

    async def backoff(self, error: ChatError) -> bool:
        """若允许重试则等待并返回 True，否则立即返回 False。"""

        if not self.should_retry(error):
            return False
        delay_ms = self.next_delay_ms(error)
        await self._sleep(delay_ms / 1000.0)
        self.elapsed_wait_ms += delay_ms
        self.attempt += 1
        return True
