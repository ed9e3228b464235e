from __future__ import annotations

import asyncio
import logging

import litellm
import openai

from doc_evolution.core.errors import (
    CompletionError,
    CompletionTimeoutError,
    InvalidResponseError,
    RateLimitedError,
)

litellm.drop_params = True

logger = logging.getLogger(__name__)


class LLMClient:
    """Completion client over litellm with a cap on in-flight requests."""

    def __init__(self, model: str, max_concurrent_requests: int = 4) -> None:
        self.model = model
        self._slots = asyncio.Semaphore(max_concurrent_requests)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> str:
        async with self._slots:
            try:
                response = await litellm.acompletion(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            except litellm.RateLimitError as e:
                raise RateLimitedError(str(e)) from e
            except (
                litellm.Timeout,
                litellm.APIConnectionError,
                litellm.ServiceUnavailableError,
                litellm.InternalServerError,
            ) as e:
                raise CompletionTimeoutError(str(e)) from e
            except openai.OpenAIError as e:
                # Every litellm provider exception derives from it
                raise CompletionError(str(e)) from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise InvalidResponseError(f"Malformed completion payload: {e}") from e
        if not content:
            raise InvalidResponseError("Empty completion")
        return content
