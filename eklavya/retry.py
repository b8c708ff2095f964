"""Bounded retry with increasing backoff for transient backend failures."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from config.config_loader import RetryConfig
from eklavya.providers.base import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(exc: BaseException) -> bool:
    """Transient provider errors are retryable; everything else is not."""
    return isinstance(exc, ProviderError) and exc.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry, how long to wait, and which errors qualify.

    The delay before retry ``n`` (1-based) is ``base_delay_sec * n``.
    """

    max_retries: int = 2
    base_delay_sec: float = 1.5
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(max_retries=config.max_retries, base_delay_sec=config.base_delay_sec)

    def delay_for(self, retry_number: int) -> float:
        return self.base_delay_sec * retry_number


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "call",
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Await ``fn()``, retrying retryable failures per ``policy``.

    Non-retryable errors propagate on first occurrence. When retries are
    exhausted the last error propagates.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        policy: Retry policy.
        label: Name used in log lines.
        on_retry: Called with (retry_number, error) before each retry sleeps.
    """
    retry_number = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not policy.is_retryable(exc):
                raise
            if retry_number >= policy.max_retries:
                logger.warning("%s failed after %d retries: %s", label, retry_number, exc)
                raise
            retry_number += 1
            delay = policy.delay_for(retry_number)
            logger.warning(
                "%s failed (%s), retry %d/%d in %.1fs",
                label,
                exc,
                retry_number,
                policy.max_retries,
                delay,
            )
            if on_retry:
                on_retry(retry_number, exc)
            await asyncio.sleep(delay)
