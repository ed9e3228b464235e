from __future__ import annotations

import dataclasses
import logging
import re
from collections import Counter
from pathlib import Path

from doc_evolution.core.errors import (
    ApprovalError,
    DocumentNotFoundError,
    FeedbackAlreadyRecordedError,
    PersistenceError,
    UnknownMessageError,
)
from doc_evolution.core.ledger import FitnessLedger
from doc_evolution.core.orchestrator import EvolutionOrchestrator
from doc_evolution.core.protocols import CompletionClient, ContentSource, Store
from doc_evolution.core.types import (
    Document,
    EngineConfig,
    EvolutionJob,
    EvolutionTarget,
    FeedbackSignal,
    HistoryOutcome,
    HistoryRecord,
    InterpretationRule,
    JobStatus,
    NoOp,
    Rating,
    RuleApplication,
    RuleStats,
    SelfEvolutionJob,
    TargetScan,
    utc_now,
)
from doc_evolution.evaluation.judge import PairwiseJudge
from doc_evolution.llm.client import LLMClient
from doc_evolution.llm.retry import RetryingClient, RetryPolicy
from doc_evolution.self_evolution.diagnosis import WeaknessDiagnoser
from doc_evolution.self_evolution.questions import SyntheticQuestionGenerator
from doc_evolution.self_evolution.workflow import SelfEvolutionOrchestrator
from doc_evolution.sources.local import LocalDirectorySource
from doc_evolution.storage.json_store import JsonFileStore
from doc_evolution.strategies import get_strategy
from doc_evolution.strategies.interpretation.generator import RuleGenerator

logger = logging.getLogger(__name__)


def rule_matches(rule: InterpretationRule, query: str) -> bool:
    """A rule applies when it has no trigger or its trigger matches the query.

    Triggers are case-insensitive regexes; one that does not compile is
    matched as a plain substring.
    """
    if not rule.trigger_pattern:
        return True
    try:
        return re.search(rule.trigger_pattern, query, re.IGNORECASE) is not None
    except re.error:
        return rule.trigger_pattern.lower() in query.lower()


class EvolutionService:
    """Entry point for the consuming application.

    Clients, store and content source are built once by the caller and
    injected here.
    """

    def __init__(
        self,
        store: Store,
        content_source: ContentSource,
        generator_llm: CompletionClient,
        judge_llm: CompletionClient,
        config: EngineConfig,
    ) -> None:
        self.store = store
        self.content_source = content_source
        self.generator_llm = generator_llm
        self.judge_llm = judge_llm
        self.config = config
        self.judge = PairwiseJudge(judge_llm, config)
        self.ledger = FitnessLedger(store, config.ledger)

    def orchestrator(self, strategy: str | None = None) -> EvolutionOrchestrator:
        config = self.config
        if strategy is not None and strategy != config.strategy:
            config = dataclasses.replace(config, strategy=strategy)
        components = get_strategy(config.strategy).create_components(
            config, self.generator_llm, self.store, self.content_source
        )
        return EvolutionOrchestrator(self.store, self.content_source, components, self.judge, config)

    def self_evolution(self) -> SelfEvolutionOrchestrator:
        settings = self.config.self_evolution
        return SelfEvolutionOrchestrator(
            store=self.store,
            content_source=self.content_source,
            questions=SyntheticQuestionGenerator(self.generator_llm, settings),
            diagnoser=WeaknessDiagnoser(self.judge_llm, settings),
            rule_generator=RuleGenerator(self.generator_llm, self.config),
            judge=self.judge,
            config=self.config,
        )

    # --- documents ---

    async def sync_documents(self) -> list[Document]:
        """Register content-source documents the store does not know yet."""
        added = []
        for document_id, name in await self.content_source.list_documents():
            if await self.store.get("documents", document_id) is not None:
                continue
            document = Document(document_id=document_id, name=name)
            await self.store.insert("documents", document.to_dict())
            added.append(document)
        logger.info("Registered %d new document(s)", len(added))
        return added

    # --- evolution ---

    async def scan_targets(self, document_id: str | None = None) -> TargetScan:
        return await self.orchestrator().identify_targets(document_id)

    async def run_evolution(
        self, document_id: str | None = None, strategy: str | None = None
    ) -> list[EvolutionJob]:
        return await self.orchestrator(strategy).run(document_id)

    async def run_self_evolution(
        self, document_id: str | None = None
    ) -> list[SelfEvolutionJob | NoOp]:
        return await self.self_evolution().run(document_id)

    async def approve_job(self, job_id: str) -> HistoryRecord:
        """Adopt the winner of a completed job that was left for approval."""
        row = await self.store.get("jobs", job_id)
        if row is None:
            raise ApprovalError(f"Job not found: {job_id}")
        job = EvolutionJob.from_dict(row)

        if job.status is not JobStatus.COMPLETED:
            raise ApprovalError(f"Job {job_id} is {job.status.value}, not completed")
        winner = job.winner
        result = job.result_for(job.winner_id) if job.winner_id else None
        if winner is None or result is None:
            raise ApprovalError(f"Job {job_id} has no winner to approve")
        adopted = await self.store.select(
            "history", job_id=job_id, outcome=HistoryOutcome.ADOPTED.value
        )
        rolled_back = await self.store.select(
            "history", job_id=job_id, outcome=HistoryOutcome.ROLLED_BACK.value
        )
        if job.applied or len(adopted) > len(rolled_back):
            raise ApprovalError(f"Job {job_id} was already applied")

        doc_row = await self.store.get("documents", job.document_id)
        if doc_row is None:
            raise DocumentNotFoundError(job.document_id)
        orchestrator = self.orchestrator(job.strategy)
        target = EvolutionTarget(
            document=Document.from_dict(doc_row),
            feedback=[],
            content=await self.content_source.get_content(job.document_id),
            active_rules=await self.list_rules(job.document_id, enabled_only=True),
        )
        record = await orchestrator.adopt(job, winner, result, target)
        logger.info("Approved job %s", job_id)
        return record

    async def approve_self_evolution(self, job_id: str) -> list[HistoryRecord]:
        """Adopt the rule candidates a self-evolution run without auto_apply accepted."""
        return await self.self_evolution().approve(job_id)

    async def rollback(self, history_id: str) -> HistoryRecord:
        """Undo an adoption: restore the old text or disable the rule."""
        row = await self.store.get("history", history_id)
        if row is None:
            raise ApprovalError(f"History entry not found: {history_id}")
        entry = HistoryRecord.from_dict(row)

        if entry.outcome is not HistoryOutcome.ADOPTED:
            raise ApprovalError(f"History entry {history_id} is {entry.outcome.value}, not adopted")
        if not entry.rollback_available:
            raise ApprovalError(f"History entry {history_id} has no complete snapshot to restore")
        same_candidate = {"job_id": entry.job_id, "candidate_id": entry.candidate_id}
        adoptions = await self.store.select(
            "history", outcome=HistoryOutcome.ADOPTED.value, **same_candidate
        )
        rollbacks = await self.store.select(
            "history", outcome=HistoryOutcome.ROLLED_BACK.value, **same_candidate
        )
        if len(rollbacks) >= len(adoptions):
            raise ApprovalError(f"History entry {history_id} was already rolled back")

        if entry.rule_id:
            await self.set_rule_enabled(entry.rule_id, False)
        else:
            if entry.previous_snapshot is None:
                raise ApprovalError(f"History entry {history_id} has no previous content")
            await self.content_source.update_content(entry.document_id, entry.previous_snapshot)

        doc_row = await self.store.get("documents", entry.document_id)
        if doc_row is None:
            raise DocumentNotFoundError(entry.document_id)
        generation = doc_row["generation"] + 1

        record = HistoryRecord(
            document_id=entry.document_id,
            job_id=entry.job_id,
            outcome=HistoryOutcome.ROLLED_BACK,
            generation=generation,
            kind=entry.kind,
            candidate_id=entry.candidate_id,
            trigger_feedback_ids=list(entry.trigger_feedback_ids),
            previous_snapshot=entry.new_snapshot,
            new_snapshot=entry.previous_snapshot,
            rule_id=entry.rule_id,
        )
        await self.store.insert("history", record.to_dict())
        await self.store.update(
            "documents", entry.document_id, {"generation": generation, "updated_at": utc_now()}
        )
        logger.info("Rolled back %s for %s", history_id, entry.document_id)
        return record

    async def list_jobs(self, document_id: str | None = None) -> list[EvolutionJob]:
        filters = {"document_id": document_id} if document_id else {}
        jobs = [EvolutionJob.from_dict(r) for r in await self.store.select("jobs", **filters)]
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    async def list_history(self, document_id: str | None = None) -> list[HistoryRecord]:
        filters = {"document_id": document_id} if document_id else {}
        records = [HistoryRecord.from_dict(r) for r in await self.store.select("history", **filters)]
        return sorted(records, key=lambda h: h.created_at, reverse=True)

    # --- rules ---

    async def list_rules(
        self, document_id: str | None = None, enabled_only: bool = False
    ) -> list[InterpretationRule]:
        filters: dict[str, object] = {}
        if document_id:
            filters["document_id"] = document_id
        if enabled_only:
            filters["enabled"] = True
        rules = [InterpretationRule.from_dict(r) for r in await self.store.select("rules", **filters)]
        return sorted(rules, key=lambda r: r.score, reverse=True)

    async def get_applicable_rules(self, document_id: str, query: str) -> list[InterpretationRule]:
        """Enabled rules for the document whose trigger matches the query, best first."""
        rules = await self.list_rules(document_id, enabled_only=True)
        return [r for r in rules if rule_matches(r, query)]

    async def set_rule_enabled(self, rule_id: str, enabled: bool) -> InterpretationRule:
        if await self.store.get("rules", rule_id) is None:
            raise PersistenceError(f"Rule not found: {rule_id}")
        row = await self.store.update("rules", rule_id, {"enabled": enabled, "updated_at": utc_now()})
        logger.info("Rule %s %s", rule_id, "enabled" if enabled else "disabled")
        return InterpretationRule.from_dict(row)

    async def rule_stats(self) -> RuleStats:
        rules = [InterpretationRule.from_dict(r) for r in await self.store.select("rules")]
        applications = [
            RuleApplication.from_dict(r) for r in await self.store.select("applications")
        ]
        with_rules = [a for a in applications if a.applied_rule_ids]

        ratings = []
        for application in with_rules:
            if application.feedback_id:
                row = await self.store.get("feedback", application.feedback_id)
                if row is not None:
                    ratings.append(row["rating"])

        return RuleStats(
            total_rules=len(rules),
            enabled_rules=sum(1 for r in rules if r.enabled),
            rules_by_type=dict(Counter(r.rule_type.value for r in rules)),
            avg_score=sum(r.score for r in rules) / len(rules) if rules else 0.0,
            total_applications=len(with_rules),
            positive_feedback_rate=(
                ratings.count(Rating.GOOD.value) / len(ratings) if ratings else 0.0
            ),
        )

    # --- live usage ---

    async def record_application(
        self,
        message_id: str,
        document_id: str,
        user_query: str,
        response: str,
        rule_ids: list[str] | None = None,
    ) -> RuleApplication:
        """Remember which rules shaped the response to a message."""
        application = RuleApplication(
            message_id=message_id,
            document_id=document_id,
            user_query=user_query,
            produced_response=response,
            applied_rule_ids=list(rule_ids or []),
        )
        await self.store.insert("applications", application.to_dict())
        return application

    async def record_feedback(
        self, message_id: str, rating: Rating, text: str | None = None
    ) -> FeedbackSignal:
        """Store the rating for a message and feed it to the ledger.

        Each message can be rated once.
        """
        rows = await self.store.select("applications", message_id=message_id)
        if not rows:
            raise UnknownMessageError(message_id)
        application = RuleApplication.from_dict(rows[0])

        if application.feedback_id or await self.store.select("feedback", message_id=message_id):
            raise FeedbackAlreadyRecordedError(message_id)

        signal = FeedbackSignal(
            document_id=application.document_id,
            user_query=application.user_query,
            produced_response=application.produced_response,
            rating=rating,
            free_text=text,
            message_id=message_id,
        )
        await self.store.insert("feedback", signal.to_dict())
        await self._bump_count(signal.document_id, rating)
        await self.store.update("applications", application.id, {"feedback_id": signal.id})

        if application.applied_rule_ids:
            await self.ledger.apply_many(application.applied_rule_ids, signal.id, signal.rating)
        return signal

    async def _bump_count(self, document_id: str, rating: Rating) -> None:
        row = await self.store.get("documents", document_id)
        if row is None:
            logger.warning("Feedback for unregistered document %s", document_id)
            return
        field_name = "good_count" if rating is Rating.GOOD else "bad_count"
        await self.store.update(
            "documents", document_id, {field_name: row[field_name] + 1}
        )


def create_service(config: EngineConfig, data_dir: Path, docs_dir: Path) -> EvolutionService:
    """Build a service over a JSON-file store and a directory of Markdown files."""
    policy = RetryPolicy(
        attempts=config.retry_attempts,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
    )
    generator_llm = RetryingClient(
        LLMClient(config.generator_model, config.max_concurrent_requests), policy
    )
    if config.judge_model == config.generator_model:
        judge_llm = generator_llm
    else:
        judge_llm = RetryingClient(
            LLMClient(config.judge_model, config.max_concurrent_requests), policy
        )
    return EvolutionService(
        store=JsonFileStore(data_dir),
        content_source=LocalDirectorySource(docs_dir),
        generator_llm=generator_llm,
        judge_llm=judge_llm,
        config=config,
    )
