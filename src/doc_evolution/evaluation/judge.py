from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field

from doc_evolution.core.errors import CompletionError
from doc_evolution.core.protocols import CompletionClient
from doc_evolution.core.selector import aggregate
from doc_evolution.core.types import (
    Comparison,
    EngineConfig,
    EvaluationResult,
    InterpretationRule,
    MetricScores,
    Winner,
)
from doc_evolution.evaluation.parser import Verdict, neutral_verdict, parse_verdict
from doc_evolution.evaluation.prompts import build_answer_prompt, build_judge_prompt
from doc_evolution.llm.parsing import Unparsed

logger = logging.getLogger(__name__)

_SWAPPED = {Winner.A: Winner.B, Winner.B: Winner.A, Winner.TIE: Winner.TIE}


@dataclass
class AnswerContext:
    """What a response is generated from: document content plus any rules."""

    content: str
    rules: list[InterpretationRule] = field(default_factory=list)


class PairwiseJudge:
    def __init__(self, llm: CompletionClient, config: EngineConfig) -> None:
        self.llm = llm
        self.config = config

    async def answer(self, question: str, context: AnswerContext) -> str:
        system, user = build_answer_prompt(question, context.content, context.rules)
        return await self.llm.complete(
            system,
            user,
            temperature=self.config.answer_temperature,
            max_tokens=self.config.answer_max_tokens,
        )

    async def compare(
        self, question: str, baseline: AnswerContext, candidate: AnswerContext
    ) -> Comparison:
        """Answer from both contexts concurrently, then ask for a verdict.

        Baseline is always reported as A and candidate as B. Failures to
        produce either answer propagate; a failed or unparseable verdict
        degrades to a neutral tie.
        """
        baseline_response, candidate_response = await asyncio.gather(
            self.answer(question, baseline),
            self.answer(question, candidate),
        )

        if self.config.order_bias_mitigation:
            verdict, parsed = await self._verdict_both_orders(
                question, baseline_response, candidate_response
            )
        else:
            verdict, parsed = await self._verdict(
                question, baseline_response, candidate_response
            )

        return Comparison(
            question=question,
            winner=verdict.winner,
            baseline_scores=verdict.scores_a,
            candidate_scores=verdict.scores_b,
            reasoning=verdict.reasoning,
            suggestions=verdict.suggestions,
            parsed=parsed,
            baseline_response=baseline_response,
            candidate_response=candidate_response,
        )

    async def _verdict(self, question: str, response_a: str, response_b: str) -> tuple[Verdict, bool]:
        system, user = build_judge_prompt(question, response_a, response_b)
        logger.debug("=== JUDGE ===\nUSER PROMPT:\n%s", user)

        try:
            raw = await self.llm.complete(
                system,
                user,
                temperature=self.config.judge_temperature,
                max_tokens=self.config.judge_max_tokens,
            )
        except CompletionError as e:
            logger.warning("Judge call failed, scoring as tie: %s", e)
            return neutral_verdict(f"judge unavailable: {e}"), False

        logger.debug("RESPONSE:\n%s", raw)
        result = parse_verdict(raw)
        if isinstance(result, Unparsed):
            logger.warning("Unparsed judge verdict, scoring as tie: %s", result.reason)
            return neutral_verdict(), False
        return result.value, True

    async def _verdict_both_orders(
        self, question: str, baseline_response: str, candidate_response: str
    ) -> tuple[Verdict, bool]:
        (ab, ab_parsed), (ba, ba_parsed) = await asyncio.gather(
            self._verdict(question, baseline_response, candidate_response),
            self._verdict(question, candidate_response, baseline_response),
        )
        # Map the swapped run back so that A is the baseline
        ba_winner = _SWAPPED[ba.winner]
        winner = ab.winner if ab.winner == ba_winner else Winner.TIE

        return (
            Verdict(
                winner=winner,
                scores_a=MetricScores.average([ab.scores_a, ba.scores_b]),
                scores_b=MetricScores.average([ab.scores_b, ba.scores_a]),
                reasoning=f"[A-B ordering]: {ab.reasoning}\n[B-A ordering]: {ba.reasoning}",
                suggestions=ab.suggestions + [s for s in ba.suggestions if s not in ab.suggestions],
            ),
            ab_parsed and ba_parsed,
        )

    async def compare_repeated(
        self,
        question: str,
        baseline: AnswerContext,
        candidate: AnswerContext,
        rounds: int,
    ) -> Comparison | None:
        """Run several comparisons and merge them: mean scores, majority winner.

        Returns None if no round produced both answers.
        """
        outcomes = await asyncio.gather(
            *(self._safe_compare(question, baseline, candidate) for _ in range(max(rounds, 1)))
        )
        comparisons = [c for c in outcomes if c is not None]
        if not comparisons:
            return None
        if len(comparisons) == 1:
            return comparisons[0]

        votes = Counter(c.winner for c in comparisons)
        if votes[Winner.B] > votes[Winner.A]:
            winner = Winner.B
        elif votes[Winner.A] > votes[Winner.B]:
            winner = Winner.A
        else:
            winner = Winner.TIE

        suggestions: list[str] = []
        for c in comparisons:
            suggestions.extend(s for s in c.suggestions if s not in suggestions)

        first = comparisons[0]
        return Comparison(
            question=question,
            winner=winner,
            baseline_scores=MetricScores.average([c.baseline_scores for c in comparisons]),
            candidate_scores=MetricScores.average([c.candidate_scores for c in comparisons]),
            reasoning=" | ".join(c.reasoning for c in comparisons if c.reasoning),
            suggestions=suggestions,
            parsed=any(c.parsed for c in comparisons),
            baseline_response=first.baseline_response,
            candidate_response=first.candidate_response,
        )

    async def _safe_compare(
        self, question: str, baseline: AnswerContext, candidate: AnswerContext
    ) -> Comparison | None:
        try:
            return await self.compare(question, baseline, candidate)
        except CompletionError as e:
            logger.warning("Skipping comparison for %r: %s", question[:80], e)
            return None

    async def evaluate(
        self,
        candidate_id: str,
        baseline: AnswerContext,
        candidate: AnswerContext,
        questions: list[str],
    ) -> EvaluationResult:
        """Compare candidate against baseline on every question, then aggregate.

        Aggregation waits for all comparisons; questions whose answers could
        not be generated are left out of the sample.
        """
        outcomes = await asyncio.gather(
            *(self._safe_compare(q, baseline, candidate) for q in questions)
        )
        comparisons = [c for c in outcomes if c is not None]
        return aggregate(candidate_id, comparisons)
