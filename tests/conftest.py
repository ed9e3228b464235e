from __future__ import annotations

import json
from collections.abc import Callable

import pytest

from doc_evolution.core.errors import DocumentNotFoundError
from doc_evolution.core.types import Document, FeedbackSignal, Rating
from doc_evolution.storage.memory import InMemoryStore


class FakeLLM:
    """CompletionClient double: a handler maps (system, user) to a reply.

    A handler that returns an exception instance has it raised instead.
    """

    def __init__(self, handler: Callable[[str, str], str | Exception] | None = None) -> None:
        self.handler = handler or (lambda system, user: "")
        self.calls: list[tuple[str, str, float]] = []

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> str:
        self.calls.append((system_prompt, user_prompt, temperature))
        result = self.handler(system_prompt, user_prompt)
        if isinstance(result, Exception):
            raise result
        return result


class DictSource:
    def __init__(self, documents: dict[str, str]) -> None:
        self.documents = dict(documents)
        self.updates: list[tuple[str, str]] = []

    async def list_documents(self) -> list[tuple[str, str]]:
        return [(doc_id, doc_id.title()) for doc_id in self.documents]

    async def get_content(self, document_id: str) -> str:
        if document_id not in self.documents:
            raise DocumentNotFoundError(document_id)
        return self.documents[document_id]

    async def update_content(self, document_id: str, new_text: str) -> None:
        if document_id not in self.documents:
            raise DocumentNotFoundError(document_id)
        self.documents[document_id] = new_text
        self.updates.append((document_id, new_text))


def verdict_json(
    winner: str,
    a: tuple[float, float, float] = (3, 3, 3),
    b: tuple[float, float, float] = (3, 3, 3),
    suggestions: list[str] | None = None,
) -> str:
    def scores(s: tuple[float, float, float]) -> dict[str, float]:
        return {"helpfulness": s[0], "correctness": s[1], "coherence": s[2]}

    return json.dumps(
        {
            "winner": winner,
            "scores": {"A": scores(a), "B": scores(b)},
            "reasoning": f"{winner} is better",
            "suggestions": suggestions or [],
        }
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def source():
    return DictSource({"doc-1": "# Leave policy\nSubmit leave requests promptly."})


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def verdict():
    return verdict_json


@pytest.fixture
def seed_feedback(store):
    """Register a document and add rated feedback for it."""

    async def seed(
        document_id: str = "doc-1",
        bad: int = 3,
        good: int = 0,
        register: bool = True,
    ) -> list[FeedbackSignal]:
        if register and await store.get("documents", document_id) is None:
            await store.insert("documents", Document(document_id=document_id).to_dict())
        signals = []
        for i in range(bad):
            signals.append(
                FeedbackSignal(
                    document_id=document_id,
                    user_query=f"bad question {i}",
                    produced_response=f"unhelpful answer {i}",
                    rating=Rating.BAD,
                    free_text="did not answer the question",
                )
            )
        for i in range(good):
            signals.append(
                FeedbackSignal(
                    document_id=document_id,
                    user_query=f"good question {i}",
                    produced_response=f"helpful answer {i}",
                    rating=Rating.GOOD,
                )
            )
        for signal in signals:
            await store.insert("feedback", signal.to_dict())
        return signals

    return seed
