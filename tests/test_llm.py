from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import litellm
import openai
import pytest

from doc_evolution.core.errors import (
    CompletionError,
    CompletionTimeoutError,
    InvalidResponseError,
    RateLimitedError,
)
from doc_evolution.core.types import EngineConfig
from doc_evolution.evaluation.judge import AnswerContext, PairwiseJudge
from doc_evolution.llm.client import LLMClient
from doc_evolution.llm.retry import RetryingClient, RetryPolicy

NO_WAIT = RetryPolicy(attempts=3, base_delay=0.0, jitter=0.0)


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def flaky(errors: list[Exception], reply: str = "ok"):
    remaining = list(errors)

    def handler(system, user):
        return remaining.pop(0) if remaining else reply

    return handler


class TestRetryingClient:
    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, make_llm):
        inner = make_llm(flaky([RateLimitedError("429"), CompletionTimeoutError("timeout")]))
        client = RetryingClient(inner, NO_WAIT)

        assert await client.complete("sys", "user") == "ok"
        assert len(inner.calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, make_llm):
        inner = make_llm(flaky([RateLimitedError("429")] * 5))
        client = RetryingClient(inner, NO_WAIT)

        with pytest.raises(RateLimitedError):
            await client.complete("sys", "user")
        assert len(inner.calls) == 3

    @pytest.mark.asyncio
    async def test_invalid_response_is_not_retried(self, make_llm):
        inner = make_llm(flaky([InvalidResponseError("empty")]))
        client = RetryingClient(inner, NO_WAIT)

        with pytest.raises(InvalidResponseError):
            await client.complete("sys", "user")
        assert len(inner.calls) == 1

    @pytest.mark.asyncio
    async def test_passes_sampling_settings_through(self, make_llm):
        inner = make_llm(lambda s, u: "ok")
        await RetryingClient(inner, NO_WAIT).complete("sys", "user", temperature=0.2)
        assert inner.calls == [("sys", "user", 0.2)]

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(a) for a in range(4)] == [1.0, 2.0, 4.0, 5.0]


class TestLLMClient:
    @pytest.mark.asyncio
    async def test_returns_message_content(self, monkeypatch):
        acompletion = AsyncMock(return_value=completion("An answer"))
        monkeypatch.setattr(litellm, "acompletion", acompletion)

        result = await LLMClient("openai/gpt-4o-mini").complete("sys", "user", temperature=0.3, max_tokens=50)

        assert result == "An answer"
        kwargs = acompletion.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-4o-mini"
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "user"},
        ]
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_empty_content_is_invalid(self, monkeypatch):
        monkeypatch.setattr(litellm, "acompletion", AsyncMock(return_value=completion(None)))
        with pytest.raises(InvalidResponseError):
            await LLMClient("openai/gpt-4o-mini").complete("sys", "user")

    @pytest.mark.asyncio
    async def test_malformed_payload_is_invalid(self, monkeypatch):
        monkeypatch.setattr(litellm, "acompletion", AsyncMock(return_value=SimpleNamespace(choices=[])))
        with pytest.raises(InvalidResponseError):
            await LLMClient("openai/gpt-4o-mini").complete("sys", "user")

    @pytest.mark.asyncio
    async def test_rate_limit_is_mapped(self, monkeypatch):
        error = litellm.RateLimitError("slow down", llm_provider="openai", model="gpt-4o-mini")
        monkeypatch.setattr(litellm, "acompletion", AsyncMock(side_effect=error))
        with pytest.raises(RateLimitedError):
            await LLMClient("openai/gpt-4o-mini").complete("sys", "user")

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, monkeypatch):
        error = litellm.InternalServerError("503 overloaded", llm_provider="openai", model="gpt-4o-mini")
        monkeypatch.setattr(litellm, "acompletion", AsyncMock(side_effect=error))
        with pytest.raises(CompletionTimeoutError) as exc_info:
            await LLMClient("openai/gpt-4o-mini").complete("sys", "user")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_other_provider_errors_are_completion_errors(self, monkeypatch):
        monkeypatch.setattr(litellm, "acompletion", AsyncMock(side_effect=openai.OpenAIError("forbidden")))
        with pytest.raises(CompletionError) as exc_info:
            await LLMClient("openai/gpt-4o-mini").complete("sys", "user")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_overloaded_provider_skips_the_question(self, monkeypatch):
        error = litellm.InternalServerError("503 overloaded", llm_provider="openai", model="gpt-4o-mini")
        acompletion = AsyncMock(side_effect=error)
        monkeypatch.setattr(litellm, "acompletion", acompletion)
        client = RetryingClient(LLMClient("openai/gpt-4o-mini"), NO_WAIT)

        result = await PairwiseJudge(client, EngineConfig()).evaluate(
            "c1", AnswerContext("old"), AnswerContext("new"), ["How many days?"]
        )

        assert result.sample_count == 0
        assert result.win_rate == 0.0
        assert acompletion.await_count >= NO_WAIT.attempts
