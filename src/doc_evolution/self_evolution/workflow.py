from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from doc_evolution.core.errors import ApprovalError, DocumentNotFoundError
from doc_evolution.core.selector import improvement_rate
from doc_evolution.core.types import (
    Candidate,
    Comparison,
    Document,
    EngineConfig,
    FeedbackContext,
    HistoryOutcome,
    HistoryRecord,
    InterpretationRule,
    NoOp,
    SelfEvaluationResult,
    SelfEvolutionJob,
    SelfEvolutionStatus,
    SkipReason,
    SyntheticQuestion,
    Weakness,
    utc_now,
)
from doc_evolution.evaluation.judge import AnswerContext
from doc_evolution.strategies.interpretation import rule_from_candidate

if TYPE_CHECKING:
    from doc_evolution.core.protocols import ContentSource, Store
    from doc_evolution.evaluation.judge import PairwiseJudge
    from doc_evolution.self_evolution.diagnosis import WeaknessDiagnoser
    from doc_evolution.self_evolution.questions import SyntheticQuestionGenerator
    from doc_evolution.strategies.interpretation.generator import RuleGenerator

logger = logging.getLogger(__name__)


class SelfEvolutionOrchestrator:
    """Improves a document's rule set without user feedback.

    Synthetic questions are answered without and with the enabled rules;
    weak questions are diagnosed, each distinct weakness gets one rule
    candidate, and a candidate is adopted when it lifts the mean judge
    score by at least min_improvement_rate.
    """

    def __init__(
        self,
        store: Store,
        content_source: ContentSource,
        questions: SyntheticQuestionGenerator,
        diagnoser: WeaknessDiagnoser,
        rule_generator: RuleGenerator,
        judge: PairwiseJudge,
        config: EngineConfig,
    ) -> None:
        self.store = store
        self.content_source = content_source
        self.questions = questions
        self.diagnoser = diagnoser
        self.rule_generator = rule_generator
        self.judge = judge
        self.config = config
        self.settings = config.self_evolution

    async def run(self, document_id: str | None = None) -> list[SelfEvolutionJob | NoOp]:
        if document_id is not None:
            return [await self.run_document(document_id)]
        return await self.run_all()

    async def run_all(self) -> list[SelfEvolutionJob | NoOp]:
        rows = await self.store.select("documents")
        semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)

        async def bounded(doc_id: str) -> SelfEvolutionJob | NoOp:
            async with semaphore:
                return await self.run_document(doc_id)

        return list(await asyncio.gather(*(bounded(r["document_id"]) for r in rows)))

    async def run_document(self, document_id: str) -> SelfEvolutionJob | NoOp:
        doc_row = await self.store.get("documents", document_id)
        if doc_row is None:
            logger.info("Skipping self-evolution for %s: not registered", document_id)
            return NoOp(document_id, SkipReason.DOCUMENT_NOT_FOUND)
        document = Document.from_dict(doc_row)

        job = SelfEvolutionJob(document_id=document_id)
        await self.store.insert("self_jobs", job.to_dict())

        try:
            await self._set_status(job, SelfEvolutionStatus.GENERATING_QUESTIONS)
            content = await self.content_source.get_content(document_id)
            rules = await self._enabled_rules(document_id)
            job.questions = await self.questions.generate(document.name or document_id, content)

            await self._set_status(job, SelfEvolutionStatus.EVALUATING)
            job.evaluations = await self._evaluate_questions(job.questions, content, rules)
            job.weaknesses = await self.diagnoser.find_weaknesses(job.evaluations, bool(rules))

            await self._set_status(job, SelfEvolutionStatus.GENERATING_RULES)
            await self._evolve_rules(job, document, content, rules)

            job.status = SelfEvolutionStatus.COMPLETED
            job.completed_at = utc_now()
            await self.store.update("self_jobs", job.id, job.to_dict())
            logger.info(
                "Self-evolution %s for %s completed: %d weakness(es), %d rule(s) adopted",
                job.id, document_id, len(job.weaknesses), len(job.adopted_rules),
            )

        except Exception as e:
            job.status = SelfEvolutionStatus.FAILED
            job.error = str(e) or type(e).__name__
            job.completed_at = utc_now()
            logger.error("Self-evolution %s failed: %s", job.id, job.error, exc_info=True)
            await self.store.update("self_jobs", job.id, job.to_dict())

        return job

    async def _set_status(self, job: SelfEvolutionJob, status: SelfEvolutionStatus) -> None:
        logger.info("Self-evolution %s: %s -> %s", job.id, job.status.value, status.value)
        job.status = status
        await self.store.update("self_jobs", job.id, job.to_dict())

    async def _enabled_rules(self, document_id: str) -> list[InterpretationRule]:
        rows = await self.store.select("rules", document_id=document_id, enabled=True)
        return sorted(
            (InterpretationRule.from_dict(r) for r in rows), key=lambda r: r.score, reverse=True
        )

    async def _evaluate_questions(
        self,
        questions: list[SyntheticQuestion],
        content: str,
        rules: list[InterpretationRule],
    ) -> list[SelfEvaluationResult]:
        without_rules = AnswerContext(content)
        with_rules = AnswerContext(content, list(rules))
        comparisons = await asyncio.gather(
            *(
                self.judge.compare_repeated(
                    q.question, without_rules, with_rules, self.settings.evaluation_rounds
                )
                for q in questions
            )
        )
        return [
            SelfEvaluationResult(question=q, comparison=c)
            for q, c in zip(questions, comparisons)
            if c is not None
        ]

    async def _evolve_rules(
        self,
        job: SelfEvolutionJob,
        document: Document,
        content: str,
        rules: list[InterpretationRule],
    ) -> None:
        if not job.weaknesses:
            return

        responses = {r.question.question: r.comparison.baseline_response for r in job.evaluations}
        candidates = await asyncio.gather(
            *(self._candidate_for(w, document.document_id, content, responses) for w in job.weaknesses)
        )
        job.candidates = [c for c in candidates if c is not None]

        evaluated = await asyncio.gather(
            *(
                self._improvement(candidate, weakness, job.evaluations, content, rules)
                for weakness, candidate in zip(job.weaknesses, candidates)
                if candidate is not None
            )
        )
        for candidate, rate in evaluated:
            job.improvement_rates[candidate.id] = rate
        if evaluated:
            job.avg_improvement = sum(rate for _, rate in evaluated) / len(evaluated)

        accepted = [
            (candidate, rate)
            for candidate, rate in evaluated
            if rate >= self.settings.min_improvement_rate
        ]
        for candidate, rate in evaluated:
            verdict = "accepted" if rate >= self.settings.min_improvement_rate else "rejected"
            logger.info(
                "Rule candidate %s (%s): improvement %.1f%%, %s",
                candidate.id, candidate.kind.value, rate * 100, verdict,
            )

        generation = document.generation
        if accepted and self.settings.auto_apply:
            job.adopted_rules = await self._adopt_rules(document, accepted)
            generation += 1
        elif accepted:
            logger.info(
                "Self-evolution %s: %d rule candidate(s) await approval", job.id, len(accepted)
            )

        summary = "\n".join(
            f"[{c.kind.value}] {c.content} ({job.improvement_rates[c.id]:+.1%})"
            for c, _ in accepted
        )
        record = HistoryRecord(
            document_id=document.document_id,
            job_id=job.id,
            outcome=HistoryOutcome.SELF_EVOLUTION,
            generation=generation,
            kind="self_evolution",
            mean_score=job.avg_improvement,
            new_snapshot=summary or None,
            rule_id=job.adopted_rules[0].id if len(job.adopted_rules) == 1 else None,
        )
        await self.store.insert("history", record.to_dict())

    async def _candidate_for(
        self,
        weakness: Weakness,
        document_id: str,
        content: str,
        responses: dict[str, str],
    ) -> Candidate | None:
        contexts = [
            FeedbackContext(query=q, response=responses.get(q, ""), reason=weakness.description)
            for q in weakness.affected_questions
        ]
        return await self.rule_generator.generate_for_type(
            document_id, content, contexts, weakness.suggested_rule_type
        )

    def _questions_for(self, weakness: Weakness, evaluations: list[SelfEvaluationResult]) -> list[str]:
        """Affected questions first, topped up with the rest to the sample size."""
        size = self.settings.evaluation_sample_size
        questions = list(dict.fromkeys(weakness.affected_questions))[:size]
        for result in evaluations:
            if len(questions) >= size:
                break
            if result.question.question not in questions:
                questions.append(result.question.question)
        return questions

    async def _improvement(
        self,
        candidate: Candidate,
        weakness: Weakness,
        evaluations: list[SelfEvaluationResult],
        content: str,
        rules: list[InterpretationRule],
    ) -> tuple[Candidate, float]:
        trial = rule_from_candidate(candidate, generation=0)
        baseline = AnswerContext(content, list(rules))
        with_candidate = AnswerContext(content, [*rules, trial])

        outcomes = await asyncio.gather(
            *(
                self.judge.compare_repeated(q, baseline, with_candidate, self.settings.evaluation_rounds)
                for q in self._questions_for(weakness, evaluations)
            )
        )
        comparisons: list[Comparison] = [c for c in outcomes if c is not None]
        if not comparisons:
            return candidate, 0.0

        before = sum(c.baseline_scores.mean for c in comparisons) / len(comparisons)
        after = sum(c.candidate_scores.mean for c in comparisons) / len(comparisons)
        return candidate, improvement_rate(before, after)

    async def _adopt_rules(
        self, document: Document, accepted: list[tuple[Candidate, float]]
    ) -> list[InterpretationRule]:
        generation = document.generation + 1
        rules = []
        for candidate, rate in accepted:
            rule = rule_from_candidate(candidate, generation=generation, score=0.5 + rate)
            await self.store.insert("rules", rule.to_dict())
            rules.append(rule)
        await self.store.update(
            "documents", document.document_id, {"generation": generation, "updated_at": utc_now()}
        )
        return rules

    async def approve(self, job_id: str) -> list[HistoryRecord]:
        """Adopt the accepted rule candidates of a completed job run without auto_apply.

        Each adopted rule gets its own history row so it can be rolled back.
        """
        row = await self.store.get("self_jobs", job_id)
        if row is None:
            raise ApprovalError(f"Self-evolution job not found: {job_id}")
        if row["status"] != SelfEvolutionStatus.COMPLETED.value:
            raise ApprovalError(f"Self-evolution job {job_id} is {row['status']}, not completed")
        adopted = await self.store.select("history", job_id=job_id, outcome=HistoryOutcome.ADOPTED.value)
        if row["adopted_rule_ids"] or adopted:
            raise ApprovalError(f"Self-evolution job {job_id} was already applied")

        rates: dict[str, float] = row["improvement_rates"]
        accepted = [
            (candidate, rates[candidate.id])
            for candidate in (Candidate.from_dict(c) for c in row["candidates"])
            if rates.get(candidate.id, 0.0) >= self.settings.min_improvement_rate
        ]
        if not accepted:
            raise ApprovalError(f"Self-evolution job {job_id} has no rule candidates to approve")

        doc_row = await self.store.get("documents", row["document_id"])
        if doc_row is None:
            raise DocumentNotFoundError(row["document_id"])

        records = []
        for rule in await self._adopt_rules(Document.from_dict(doc_row), accepted):
            record = HistoryRecord(
                document_id=rule.document_id,
                job_id=job_id,
                outcome=HistoryOutcome.ADOPTED,
                generation=rule.generation,
                kind=rule.rule_type.value,
                candidate_id=rule.id,
                mean_score=rates[rule.id],
                new_snapshot=rule.content,
                rollback_available=True,
                rule_id=rule.id,
            )
            await self.store.insert("history", record.to_dict())
            records.append(record)
        logger.info("Approved %d rule(s) from self-evolution %s", len(records), job_id)
        return records
