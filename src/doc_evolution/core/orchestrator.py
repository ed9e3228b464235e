from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from doc_evolution.core.errors import JobCancelledError, PersistenceError
from doc_evolution.core.selector import select_winner
from doc_evolution.core.types import (
    Candidate,
    Document,
    EngineConfig,
    EvaluationResult,
    EvolutionJob,
    EvolutionTarget,
    FeedbackSignal,
    HistoryOutcome,
    HistoryRecord,
    InterpretationRule,
    JobStatus,
    NoOp,
    Rating,
    RuleType,
    SkipReason,
    TargetScan,
    utc_now,
)

if TYPE_CHECKING:
    from doc_evolution.core.protocols import ContentSource, Store
    from doc_evolution.evaluation.judge import PairwiseJudge
    from doc_evolution.strategies.base import StrategyComponents

logger = logging.getLogger(__name__)


def truncate_snapshot(text: str | None, limit: int) -> tuple[str | None, bool]:
    """Return (snapshot, was_truncated)."""
    if text is None or len(text) <= limit:
        return text, False
    return text[:limit], True


def build_history_record(
    job: EvolutionJob,
    candidate: Candidate,
    result: EvaluationResult | None,
    outcome: HistoryOutcome,
    generation: int,
    snapshots: tuple[str | None, str],
    snapshot_limit: int,
) -> HistoryRecord:
    previous, previous_truncated = truncate_snapshot(snapshots[0], snapshot_limit)
    new, _ = truncate_snapshot(snapshots[1], snapshot_limit)
    is_rule = isinstance(candidate.kind, RuleType)

    return HistoryRecord(
        document_id=job.document_id,
        job_id=job.id,
        outcome=outcome,
        generation=generation,
        kind=candidate.kind.value,
        candidate_id=candidate.id,
        win_rate=result.win_rate if result else None,
        mean_score=result.mean_score if result else None,
        trigger_feedback_ids=list(job.trigger_feedback_ids),
        previous_snapshot=previous,
        new_snapshot=new,
        # A rule is rolled back by disabling it; a rewrite needs the full old text
        rollback_available=is_rule or (previous is not None and not previous_truncated),
        rule_id=candidate.id if is_rule else None,
    )


class EvolutionOrchestrator:
    """Drives evolution jobs: pending -> generating -> evaluating -> [updating] -> completed.

    Any error inside a job marks that job failed and leaves its trigger
    feedback unprocessed; other jobs in the batch carry on.
    """

    def __init__(
        self,
        store: Store,
        content_source: ContentSource,
        components: StrategyComponents,
        judge: PairwiseJudge,
        config: EngineConfig,
    ) -> None:
        self.store = store
        self.content_source = content_source
        self.generator = components.generator
        self.adopter = components.adopter
        self.judge = judge
        self.config = config
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Stop running jobs at their next stage boundary."""
        self._stop.set()

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise JobCancelledError("cancelled")

    async def identify_targets(self, document_id: str | None = None) -> TargetScan:
        """Group unprocessed BAD feedback by document and keep eligible ones.

        Reads only; documents that yield no job come back as NoOp entries.
        """
        scan = TargetScan()

        filters: dict[str, object] = {"rating": Rating.BAD.value, "processed": False}
        if document_id is not None:
            if await self.store.get("documents", document_id) is None:
                scan.skipped.append(NoOp(document_id, SkipReason.DOCUMENT_NOT_FOUND))
                return scan
            filters["document_id"] = document_id

        grouped: dict[str, list[FeedbackSignal]] = defaultdict(list)
        for row in await self.store.select("feedback", **filters):
            signal = FeedbackSignal.from_dict(row)
            grouped[signal.document_id].append(signal)

        if document_id is not None and not grouped:
            scan.skipped.append(NoOp(document_id, SkipReason.NO_FEEDBACK))
            return scan

        for doc_id, signals in grouped.items():
            threshold = self.config.bad_feedback_threshold
            if len(signals) < threshold:
                scan.skipped.append(
                    NoOp(doc_id, SkipReason.BELOW_THRESHOLD, f"{len(signals)}/{threshold} bad feedback")
                )
                continue

            doc_row = await self.store.get("documents", doc_id)
            if doc_row is None:
                scan.skipped.append(NoOp(doc_id, SkipReason.DOCUMENT_NOT_FOUND))
                continue

            scan.targets.append(
                EvolutionTarget(
                    document=Document.from_dict(doc_row),
                    feedback=signals,
                    good_queries=await self._good_queries(doc_id),
                    active_rules=await self._active_rules(doc_id),
                )
            )

        for noop in scan.skipped:
            logger.info("Skipping %s: %s %s", noop.document_id, noop.reason.value, noop.detail)
        return scan

    async def _good_queries(self, document_id: str) -> list[str]:
        rows = await self.store.select("feedback", document_id=document_id, rating=Rating.GOOD.value)
        queries: list[str] = []
        for row in rows:
            if row["user_query"] not in queries:
                queries.append(row["user_query"])
        return queries[: self.config.good_sample_size]

    async def _active_rules(self, document_id: str) -> list[InterpretationRule]:
        rows = await self.store.select("rules", document_id=document_id, enabled=True)
        rules = [InterpretationRule.from_dict(r) for r in rows]
        return sorted(rules, key=lambda r: r.score, reverse=True)

    def sample_questions(self, target: EvolutionTarget) -> list[str]:
        """Unique BAD queries, then GOOD queries for the same document."""
        questions: list[str] = []
        for signal in target.feedback:
            if len(questions) >= self.config.evaluation_sample_size:
                break
            if signal.user_query not in questions:
                questions.append(signal.user_query)
        for query in target.good_queries:
            if query not in questions:
                questions.append(query)
        return questions

    async def run(self, document_id: str | None = None) -> list[EvolutionJob]:
        scan = await self.identify_targets(document_id)
        return await self.run_targets(scan.targets)

    async def run_targets(self, targets: list[EvolutionTarget]) -> list[EvolutionJob]:
        semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)

        async def bounded(target: EvolutionTarget) -> EvolutionJob:
            async with semaphore:
                return await self.run_job(target)

        return list(await asyncio.gather(*(bounded(t) for t in targets)))

    async def _save(self, job: EvolutionJob) -> None:
        await self.store.update("jobs", job.id, job.to_dict())

    async def _set_status(self, job: EvolutionJob, status: JobStatus) -> None:
        logger.info("Job %s (%s): %s -> %s", job.id, job.document_id, job.status.value, status.value)
        job.status = status
        await self._save(job)

    async def _transition(self, job: EvolutionJob, status: JobStatus) -> None:
        self._check_stop()
        await self._set_status(job, status)

    async def run_job(self, target: EvolutionTarget) -> EvolutionJob:
        job = EvolutionJob(
            document_id=target.document_id,
            trigger_feedback_ids=[f.id for f in target.feedback],
            strategy=self.config.strategy,
        )
        await self.store.insert("jobs", job.to_dict())

        try:
            await self._transition(job, JobStatus.GENERATING)
            target.content = await self.content_source.get_content(target.document_id)
            job.candidates = await self.generator.generate(target)

            await self._transition(job, JobStatus.EVALUATING)
            questions = self.sample_questions(target)
            results = await asyncio.gather(
                *(
                    self.judge.evaluate(c.id, *self.adopter.answer_contexts(target, c), questions)
                    for c in job.candidates
                )
            )
            job.evaluation_results = list(results)
            for result in job.evaluation_results:
                logger.info(
                    "Candidate %s: win rate %.2f, mean score %.2f over %d question(s)",
                    result.candidate_id, result.win_rate, result.mean_score, result.sample_count,
                )

            # Selection only sees the complete result set
            winning = select_winner(job.evaluation_results, self.config.min_win_margin)
            job.winner_id = winning.candidate_id if winning else None
            # Last cancellation point; from here on the job runs to the end
            self._check_stop()
            await self._save(job)

            await self._record_outcomes(job, target)
            await self.store.update_many(
                "feedback", job.trigger_feedback_ids, {"processed": True}
            )

            winner = job.winner
            if winner is not None and winning is not None and self.config.auto_apply:
                await self._set_status(job, JobStatus.UPDATING)
                try:
                    await self.adopt(job, winner, winning, target)
                except Exception:
                    await self.store.update_many(
                        "feedback", job.trigger_feedback_ids, {"processed": False}
                    )
                    raise
                job.applied = True
            elif winner is not None:
                logger.info("Job %s: winner %s awaits approval", job.id, winner.id)
            else:
                logger.info("Job %s: no candidate cleared the bar, keeping baseline", job.id)

            job.status = JobStatus.COMPLETED
            job.completed_at = utc_now()
            await self._save(job)
            logger.info("Job %s completed", job.id)

        except JobCancelledError:
            job.error = "cancelled"
            logger.warning("Job %s cancelled during %s", job.id, job.status.value)
            await self._save_quietly(job)

        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e) or type(e).__name__
            job.completed_at = utc_now()
            logger.error("Job %s failed: %s", job.id, job.error, exc_info=True)
            await self._save_quietly(job)

        return job

    async def _save_quietly(self, job: EvolutionJob) -> None:
        try:
            await self._save(job)
        except PersistenceError as e:
            logger.error("Could not record state of job %s: %s", job.id, e)

    async def _record_outcomes(self, job: EvolutionJob, target: EvolutionTarget) -> None:
        generation = target.document.generation
        for candidate in job.candidates:
            outcome = (
                HistoryOutcome.PENDING_APPROVAL
                if candidate.id == job.winner_id
                else HistoryOutcome.REJECTED
            )
            record = build_history_record(
                job,
                candidate,
                job.result_for(candidate.id),
                outcome,
                generation,
                self.adopter.snapshots(target, candidate),
                self.config.snapshot_limit,
            )
            await self.store.insert("history", record.to_dict())

    async def adopt(
        self,
        job: EvolutionJob,
        candidate: Candidate,
        result: EvaluationResult,
        target: EvolutionTarget,
    ) -> HistoryRecord:
        """Append an adopted history row, bump the generation, then apply the candidate.

        Applying is the last step. When it fails a rolled_back row is
        appended after the adopted one and the error propagates.
        """
        doc_row = await self.store.get("documents", job.document_id)
        if doc_row is None:
            raise PersistenceError(f"Document {job.document_id} disappeared from the store")
        generation = doc_row["generation"] + 1

        record = build_history_record(
            job,
            candidate,
            result,
            HistoryOutcome.ADOPTED,
            generation,
            self.adopter.snapshots(target, candidate),
            self.config.snapshot_limit,
        )
        await self.store.insert("history", record.to_dict())
        await self.store.update(
            "documents", job.document_id, {"generation": generation, "updated_at": utc_now()}
        )

        try:
            await self.adopter.apply(
                job.document_id, candidate, result, generation, list(job.trigger_feedback_ids)
            )
        except Exception as e:
            logger.error("Applying %s for %s failed: %s", candidate.id, job.document_id, e)
            await self._record_failed_apply(record)
            raise

        logger.info(
            "Adopted %s %s for %s, now generation %d",
            self.adopter.kind_label, candidate.id, job.document_id, generation,
        )
        return record

    async def _record_failed_apply(self, adopted: HistoryRecord) -> None:
        generation = adopted.generation + 1
        record = HistoryRecord(
            document_id=adopted.document_id,
            job_id=adopted.job_id,
            outcome=HistoryOutcome.ROLLED_BACK,
            generation=generation,
            kind=adopted.kind,
            candidate_id=adopted.candidate_id,
            trigger_feedback_ids=list(adopted.trigger_feedback_ids),
            previous_snapshot=adopted.new_snapshot,
            new_snapshot=adopted.previous_snapshot,
            rule_id=adopted.rule_id,
        )
        await self.store.insert("history", record.to_dict())
        await self.store.update(
            "documents", adopted.document_id, {"generation": generation, "updated_at": utc_now()}
        )
