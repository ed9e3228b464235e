from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass

from doc_evolution.core.errors import CompletionError
from doc_evolution.core.protocols import CompletionClient

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 20.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)


class RetryingClient:
    """Wraps a CompletionClient, retrying rate-limited and timed-out calls.

    Non-retryable failures (e.g. an invalid response) propagate on the
    first attempt; retryable ones propagate once attempts are exhausted.
    """

    def __init__(self, inner: CompletionClient, policy: RetryPolicy | None = None) -> None:
        self.inner = inner
        self.policy = policy or RetryPolicy()

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> str:
        last_error: CompletionError | None = None

        for attempt in range(self.policy.attempts):
            try:
                return await self.inner.complete(
                    system_prompt, user_prompt, temperature=temperature, max_tokens=max_tokens
                )
            except CompletionError as e:
                if not e.retryable:
                    raise
                last_error = e
                if attempt + 1 < self.policy.attempts:
                    delay = self.policy.delay_for(attempt)
                    logger.warning(
                        "%s on attempt %d/%d, retrying in %.1fs",
                        type(e).__name__, attempt + 1, self.policy.attempts, delay,
                    )
                    await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error
