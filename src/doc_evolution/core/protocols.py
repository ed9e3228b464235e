from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from doc_evolution.core.types import (
        Candidate,
        EvaluationResult,
        EvolutionTarget,
    )
    from doc_evolution.evaluation.judge import AnswerContext


@runtime_checkable
class CompletionClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> str: ...


@runtime_checkable
class ContentSource(Protocol):
    async def list_documents(self) -> list[tuple[str, str]]:
        """Return (document_id, name) pairs."""
        ...

    async def get_content(self, document_id: str) -> str: ...

    async def update_content(self, document_id: str, new_text: str) -> None: ...


@runtime_checkable
class Store(Protocol):
    """Table-oriented persistence: rows are plain dicts keyed by their "id"."""

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def get(self, table: str, row_id: str) -> dict[str, Any] | None: ...

    async def select(self, table: str, **filters: Any) -> list[dict[str, Any]]: ...

    async def update(
        self, table: str, row_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def update_many(
        self, table: str, row_ids: list[str], changes: dict[str, Any]
    ) -> int: ...

    async def compare_and_set(
        self,
        table: str,
        row_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool: ...


@runtime_checkable
class CandidateGenerator(Protocol):
    async def generate(self, target: EvolutionTarget) -> list[Candidate]: ...


@runtime_checkable
class Adopter(Protocol):
    """Strategy-specific half of evaluation and adoption."""

    kind_label: str

    def answer_contexts(
        self, target: EvolutionTarget, candidate: Candidate
    ) -> tuple[AnswerContext, AnswerContext]: ...

    def snapshots(
        self, target: EvolutionTarget, candidate: Candidate
    ) -> tuple[str | None, str]:
        """Return (before, after) text for the history record."""
        ...

    async def apply(
        self,
        document_id: str,
        candidate: Candidate,
        result: EvaluationResult,
        generation: int,
        source_feedback_ids: list[str],
    ) -> None:
        """Adopt the candidate: replace the document or persist the rule."""
        ...
