from __future__ import annotations
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from relay.core.cancellation import CancellationToken
from relay.core.errors import CancellationError, ProviderRateLimitError
from relay.core.ports import ModelProvider
from relay.core.result import Err, Result
from relay.core.types import ChatCompletionRequest, ChatCompletionResponse

logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(self, max_retries=3, base_delay=0.5, max_delay=8.0, rng: Optional[random.Random] = None):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def compute_backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)) + self._rng.random() * 0.1)


async def complete_with_retry(
    provider: ModelProvider,
    request: ChatCompletionRequest,
    policy: RetryPolicy,
    token: Optional[CancellationToken] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Result[ChatCompletionResponse]:
    """
    Caller-side retry around chat_completion.
    Only errors whose is_retryable() is true are retried; a rate limit's
    retry_after (capped at max_delay) wins over the computed backoff.
    """
    attempt = 0
    while True:
        attempt += 1
        result = await provider.chat_completion(request, token)
        if result.ok:
            return result

        err = result.error
        if not err.is_retryable() or attempt > policy.max_retries:
            return result
        if token is not None and token.is_cancelled:
            return Err(CancellationError())

        delay = policy.compute_backoff(attempt)
        if isinstance(err, ProviderRateLimitError) and err.retry_after:
            delay = min(policy.max_delay, float(err.retry_after))
        logger.info("Attempt %d against %s failed (%s); retrying in %.2fs",
                    attempt, provider.name, err.code.value, delay)
        await sleep(delay)
        if token is not None and token.is_cancelled:
            return Err(CancellationError())
