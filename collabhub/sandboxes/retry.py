from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from collabhub.config import (
    sandbox_provision_max_attempts,
    sandbox_retry_base_delay_s,
    sandbox_retry_max_delay_s,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Caller errors: retrying cannot change the outcome.
NON_RETRYABLE: tuple[type[BaseException], ...] = (
    FileNotFoundError,
    FileExistsError,
    IsADirectoryError,
    NotADirectoryError,
    PermissionError,
    ValueError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    multiplier: float = 2.0

    @classmethod
    def from_env(cls) -> RetryPolicy:
        return cls(
            max_attempts=sandbox_provision_max_attempts(),
            base_delay_s=sandbox_retry_base_delay_s(),
            max_delay_s=sandbox_retry_max_delay_s(),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), capped at max_delay_s."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay_s, self.base_delay_s * (self.multiplier ** (attempt - 1)))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `fn` until it succeeds or `policy.max_attempts` is exhausted.

    NON_RETRYABLE errors propagate immediately. The last error is re-raised.
    """
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except NON_RETRYABLE:
            raise
        except Exception as exc:
            if attempt >= attempts:
                logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                attempts,
                delay,
                exc,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
