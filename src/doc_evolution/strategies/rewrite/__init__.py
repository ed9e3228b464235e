from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from doc_evolution.core.types import Candidate, EvaluationResult, EvolutionTarget
from doc_evolution.evaluation.judge import AnswerContext
from doc_evolution.strategies.base import StrategyComponents, StrategyPlugin
from doc_evolution.strategies.rewrite.generator import RewriteGenerator

if TYPE_CHECKING:
    from doc_evolution.core.protocols import CompletionClient, ContentSource, Store
    from doc_evolution.core.types import EngineConfig

logger = logging.getLogger(__name__)


class RewriteAdopter:
    kind_label = "document"

    def __init__(self, content_source: ContentSource) -> None:
        self.content_source = content_source

    def answer_contexts(
        self, target: EvolutionTarget, candidate: Candidate
    ) -> tuple[AnswerContext, AnswerContext]:
        return AnswerContext(target.content), AnswerContext(candidate.content)

    def snapshots(self, target: EvolutionTarget, candidate: Candidate) -> tuple[str | None, str]:
        return target.content, candidate.content

    async def apply(
        self,
        document_id: str,
        candidate: Candidate,
        result: EvaluationResult,
        generation: int,
        source_feedback_ids: list[str],
    ) -> None:
        await self.content_source.update_content(document_id, candidate.content)
        logger.info(
            "Adopted %s rewrite for %s (generation %d, win rate %.0f%%)",
            candidate.kind.value, document_id, generation, result.win_rate * 100,
        )


class RewriteStrategy(StrategyPlugin):
    name = "rewrite"
    description = "Rewrite the document itself and replace it when a variant wins"

    def create_components(
        self,
        config: EngineConfig,
        llm: CompletionClient,
        store: Store,
        content_source: ContentSource,
    ) -> StrategyComponents:
        return StrategyComponents(
            generator=RewriteGenerator(llm, config),
            adopter=RewriteAdopter(content_source),
        )
