"""
Saga Service — リトライ

リモート呼び出しの一時的な失敗（タイムアウト・接続断・5xx）を
指数バックオフで有限回だけ再試行する。業務エラーは再試行しない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))


NO_RETRY = RetryPolicy(attempts=1)


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    description: str,
) -> T:
    attempt = 1
    while True:
        try:
            return await call()
        except retry_on as e:
            if attempt >= policy.attempts:
                logger.warning(
                    "%s failed after %d attempt(s): %s", description, attempt, e
                )
                raise
            delay = policy.delay(attempt)
            logger.info(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description, attempt, policy.attempts, delay, e,
            )
            await asyncio.sleep(delay)
            attempt += 1
