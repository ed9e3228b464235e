from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from doc_evolution.core.types import (
    Candidate,
    EvaluationResult,
    EvolutionTarget,
    InterpretationRule,
    RuleType,
    utc_now,
)
from doc_evolution.evaluation.judge import AnswerContext
from doc_evolution.evaluation.prompts import build_interpretation_guide
from doc_evolution.strategies.base import StrategyComponents, StrategyPlugin
from doc_evolution.strategies.interpretation.generator import RuleGenerator

if TYPE_CHECKING:
    from doc_evolution.core.protocols import CompletionClient, ContentSource, Store
    from doc_evolution.core.types import EngineConfig

logger = logging.getLogger(__name__)


def rule_from_candidate(
    candidate: Candidate,
    generation: int,
    score: float = 0.5,
    source_feedback_ids: list[str] | None = None,
) -> InterpretationRule:
    if not isinstance(candidate.kind, RuleType):
        raise ValueError(f"Candidate {candidate.id} is not a rule candidate")
    return InterpretationRule(
        document_id=candidate.source_document_id,
        rule_type=candidate.kind,
        content=candidate.content,
        trigger_pattern=candidate.trigger_pattern,
        generation=generation,
        score=max(0.0, min(1.0, score)),
        source_feedback_ids=list(source_feedback_ids or []),
        id=candidate.id,
    )


class RuleAdopter:
    kind_label = "rule"

    def __init__(self, store: Store) -> None:
        self.store = store

    def answer_contexts(
        self, target: EvolutionTarget, candidate: Candidate
    ) -> tuple[AnswerContext, AnswerContext]:
        trial = rule_from_candidate(candidate, generation=target.document.generation + 1)
        return (
            AnswerContext(target.content, list(target.active_rules)),
            AnswerContext(target.content, [*target.active_rules, trial]),
        )

    def snapshots(self, target: EvolutionTarget, candidate: Candidate) -> tuple[str | None, str]:
        return build_interpretation_guide(target.active_rules) or None, candidate.content

    async def apply(
        self,
        document_id: str,
        candidate: Candidate,
        result: EvaluationResult,
        generation: int,
        source_feedback_ids: list[str],
    ) -> None:
        rule = rule_from_candidate(
            candidate,
            generation=generation,
            score=result.mean_score / 5,
            source_feedback_ids=source_feedback_ids,
        )
        if await self.store.get("rules", rule.id) is not None:
            # Approved again after a rollback
            await self.store.update(
                "rules", rule.id, {"enabled": True, "generation": generation, "updated_at": utc_now()}
            )
        else:
            await self.store.insert("rules", rule.to_dict())
        logger.info(
            "Adopted %s rule %s for %s (score %.2f)",
            rule.rule_type.value, rule.id, document_id, rule.score,
        )


class InterpretationStrategy(StrategyPlugin):
    name = "interpretation"
    description = "Add interpretation rules applied at answer time, leaving the document unchanged"

    def create_components(
        self,
        config: EngineConfig,
        llm: CompletionClient,
        store: Store,
        content_source: ContentSource,
    ) -> StrategyComponents:
        return StrategyComponents(
            generator=RuleGenerator(llm, config),
            adopter=RuleAdopter(store),
        )
