from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid4())


class Rating(str, Enum):
    GOOD = "GOOD"
    BAD = "BAD"


class MutationKind(str, Enum):
    CLARITY_REWRITE = "clarity_rewrite"
    DETAIL_EXPANSION = "detail_expansion"
    STRUCTURAL_REFORMAT = "structural_reformat"
    QA_CONVERSION = "qa_conversion"
    MERGE_CROSSOVER = "merge_crossover"
    EXTRACT_CROSSOVER = "extract_crossover"

    @property
    def is_crossover(self) -> bool:
        return self in (MutationKind.MERGE_CROSSOVER, MutationKind.EXTRACT_CROSSOVER)


class RuleType(str, Enum):
    CONTEXT = "context"
    CLARIFICATION = "clarification"
    FORMAT = "format"
    MISCONCEPTION = "misconception"
    CROSS_REFERENCE = "cross_reference"


class JobStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    EVALUATING = "evaluating"
    UPDATING = "updating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SelfEvolutionStatus(str, Enum):
    PENDING = "pending"
    GENERATING_QUESTIONS = "generating_questions"
    EVALUATING = "evaluating"
    GENERATING_RULES = "generating_rules"
    COMPLETED = "completed"
    FAILED = "failed"


class Winner(str, Enum):
    A = "A"  # baseline
    B = "B"  # candidate
    TIE = "TIE"


class HistoryOutcome(str, Enum):
    ADOPTED = "adopted"
    PENDING_APPROVAL = "pending_approval"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"
    SELF_EVOLUTION = "self_evolution"


class SkipReason(str, Enum):
    DOCUMENT_NOT_FOUND = "document_not_found"
    NO_FEEDBACK = "no_feedback"
    BELOW_THRESHOLD = "below_threshold"


class QuestionCategory(str, Enum):
    FACTUAL = "factual"
    PROCEDURAL = "procedural"
    CLARIFICATION = "clarification"
    COMPARISON = "comparison"
    EDGE_CASE = "edge_case"
    IMPLICIT = "implicit"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EDGE_CASE = "edge_case"


class WeaknessType(str, Enum):
    MISSING_CONTEXT = "missing_context"
    AMBIGUOUS = "ambiguous"
    INCOMPLETE = "incomplete"
    HARD_TO_FIND = "hard_to_find"
    MISLEADING = "misleading"


def _enum_or_none(enum_cls: type[Enum], value: Any) -> Any:
    return enum_cls(value) if value is not None else None


@dataclass
class Document:
    document_id: str
    name: str = ""
    generation: int = 0
    good_count: int = 0
    bad_count: int = 0
    updated_at: str = field(default_factory=utc_now)

    @property
    def id(self) -> str:
        return self.document_id

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["id"] = self.document_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Document:
        return cls(
            document_id=data["document_id"],
            name=data.get("name", ""),
            generation=data.get("generation", 0),
            good_count=data.get("good_count", 0),
            bad_count=data.get("bad_count", 0),
            updated_at=data.get("updated_at", utc_now()),
        )


@dataclass
class FeedbackSignal:
    document_id: str
    user_query: str
    produced_response: str
    rating: Rating
    free_text: str | None = None
    processed: bool = False
    message_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)

    @property
    def reason(self) -> str:
        return self.free_text or f'The answer to "{self.user_query}" was unsatisfactory.'

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["rating"] = self.rating.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedbackSignal:
        return cls(
            id=data["id"],
            document_id=data["document_id"],
            user_query=data["user_query"],
            produced_response=data.get("produced_response", ""),
            rating=Rating(data["rating"]),
            free_text=data.get("free_text"),
            processed=data.get("processed", False),
            message_id=data.get("message_id"),
            created_at=data.get("created_at", utc_now()),
        )


@dataclass
class FeedbackContext:
    """A query, the unsatisfactory answer it got, and why it fell short."""

    query: str
    response: str
    reason: str

    @classmethod
    def from_signal(cls, signal: FeedbackSignal) -> FeedbackContext:
        return cls(query=signal.user_query, response=signal.produced_response, reason=signal.reason)


@dataclass
class Candidate:
    source_document_id: str
    kind: MutationKind | RuleType
    content: str
    parent_ids: list[str] = field(default_factory=list)
    trigger_pattern: str | None = None
    rationale: str = ""
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_document_id": self.source_document_id,
            "kind": self.kind.value,
            "kind_family": "rule" if isinstance(self.kind, RuleType) else "mutation",
            "content": self.content,
            "parent_ids": list(self.parent_ids),
            "trigger_pattern": self.trigger_pattern,
            "rationale": self.rationale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Candidate:
        kind_cls = RuleType if data.get("kind_family") == "rule" else MutationKind
        return cls(
            id=data["id"],
            source_document_id=data["source_document_id"],
            kind=kind_cls(data["kind"]),
            content=data["content"],
            parent_ids=list(data.get("parent_ids") or []),
            trigger_pattern=data.get("trigger_pattern"),
            rationale=data.get("rationale", ""),
        )


@dataclass
class MetricScores:
    helpfulness: float = 3.0
    correctness: float = 3.0
    coherence: float = 3.0

    @property
    def mean(self) -> float:
        return (self.helpfulness + self.correctness + self.coherence) / 3

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MetricScores:
        data = data or {}
        return cls(
            helpfulness=data.get("helpfulness", 3.0),
            correctness=data.get("correctness", 3.0),
            coherence=data.get("coherence", 3.0),
        )

    @classmethod
    def average(cls, scores: list[MetricScores]) -> MetricScores:
        if not scores:
            return cls(0.0, 0.0, 0.0)
        n = len(scores)
        return cls(
            helpfulness=sum(s.helpfulness for s in scores) / n,
            correctness=sum(s.correctness for s in scores) / n,
            coherence=sum(s.coherence for s in scores) / n,
        )


@dataclass
class Comparison:
    question: str
    winner: Winner
    baseline_scores: MetricScores
    candidate_scores: MetricScores
    reasoning: str = ""
    suggestions: list[str] = field(default_factory=list)
    parsed: bool = True
    baseline_response: str = ""
    candidate_response: str = ""


@dataclass
class EvaluationResult:
    candidate_id: str
    win_rate: float
    mean_score: float
    per_metric_scores: MetricScores
    sample_count: int
    wins: int = 0
    losses: int = 0
    ties: int = 0
    baseline_mean_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["per_metric_scores"] = self.per_metric_scores.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluationResult:
        return cls(
            candidate_id=data["candidate_id"],
            win_rate=data["win_rate"],
            mean_score=data["mean_score"],
            per_metric_scores=MetricScores.from_dict(data.get("per_metric_scores")),
            sample_count=data.get("sample_count", 0),
            wins=data.get("wins", 0),
            losses=data.get("losses", 0),
            ties=data.get("ties", 0),
            baseline_mean_score=data.get("baseline_mean_score", 0.0),
        )


@dataclass
class InterpretationRule:
    document_id: str
    rule_type: RuleType
    content: str
    trigger_pattern: str | None = None
    generation: int = 1
    score: float = 0.5
    enabled: bool = True
    source_feedback_ids: list[str] = field(default_factory=list)
    # Ledger state: score is derived from these, see core.ledger
    initial_score: float | None = None
    good_events: int = 0
    bad_events: int = 0
    version: int = 0
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.initial_score is None:
            self.initial_score = self.score

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["rule_type"] = self.rule_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InterpretationRule:
        return cls(
            id=data["id"],
            document_id=data["document_id"],
            rule_type=RuleType(data["rule_type"]),
            content=data["content"],
            trigger_pattern=data.get("trigger_pattern"),
            generation=data.get("generation", 1),
            score=data.get("score", 0.5),
            enabled=data.get("enabled", True),
            source_feedback_ids=list(data.get("source_feedback_ids") or []),
            initial_score=data.get("initial_score"),
            good_events=data.get("good_events", 0),
            bad_events=data.get("bad_events", 0),
            version=data.get("version", 0),
            created_at=data.get("created_at", utc_now()),
            updated_at=data.get("updated_at", utc_now()),
        )


@dataclass
class RuleApplication:
    message_id: str
    document_id: str
    user_query: str
    produced_response: str
    applied_rule_ids: list[str] = field(default_factory=list)
    feedback_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuleApplication:
        return cls(
            id=data["id"],
            message_id=data["message_id"],
            document_id=data["document_id"],
            user_query=data.get("user_query", ""),
            produced_response=data.get("produced_response", ""),
            applied_rule_ids=list(data.get("applied_rule_ids") or []),
            feedback_id=data.get("feedback_id"),
            created_at=data.get("created_at", utc_now()),
        )


@dataclass
class EvolutionJob:
    document_id: str
    trigger_feedback_ids: list[str]
    strategy: str = "rewrite"
    status: JobStatus = JobStatus.PENDING
    candidates: list[Candidate] = field(default_factory=list)
    evaluation_results: list[EvaluationResult] = field(default_factory=list)
    winner_id: str | None = None
    applied: bool = False
    error: str | None = None
    id: str = field(default_factory=new_id)
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None

    @property
    def winner(self) -> Candidate | None:
        for candidate in self.candidates:
            if candidate.id == self.winner_id:
                return candidate
        return None

    def result_for(self, candidate_id: str) -> EvaluationResult | None:
        for result in self.evaluation_results:
            if result.candidate_id == candidate_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "trigger_feedback_ids": list(self.trigger_feedback_ids),
            "strategy": self.strategy,
            "status": self.status.value,
            "candidates": [c.to_dict() for c in self.candidates],
            "evaluation_results": [r.to_dict() for r in self.evaluation_results],
            "winner_id": self.winner_id,
            "applied": self.applied,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvolutionJob:
        return cls(
            id=data["id"],
            document_id=data["document_id"],
            trigger_feedback_ids=list(data.get("trigger_feedback_ids") or []),
            strategy=data.get("strategy", "rewrite"),
            status=JobStatus(data["status"]),
            candidates=[Candidate.from_dict(c) for c in data.get("candidates", [])],
            evaluation_results=[
                EvaluationResult.from_dict(r) for r in data.get("evaluation_results", [])
            ],
            winner_id=data.get("winner_id"),
            applied=data.get("applied", False),
            error=data.get("error"),
            started_at=data.get("started_at", utc_now()),
            completed_at=data.get("completed_at"),
        )


@dataclass
class HistoryRecord:
    document_id: str
    job_id: str
    outcome: HistoryOutcome
    generation: int
    kind: str
    candidate_id: str | None = None
    win_rate: float | None = None
    mean_score: float | None = None
    trigger_feedback_ids: list[str] = field(default_factory=list)
    previous_snapshot: str | None = None
    new_snapshot: str | None = None
    rollback_available: bool = False
    rule_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryRecord:
        return cls(
            id=data["id"],
            document_id=data["document_id"],
            job_id=data["job_id"],
            outcome=HistoryOutcome(data["outcome"]),
            generation=data["generation"],
            kind=data["kind"],
            candidate_id=data.get("candidate_id"),
            win_rate=data.get("win_rate"),
            mean_score=data.get("mean_score"),
            trigger_feedback_ids=list(data.get("trigger_feedback_ids") or []),
            previous_snapshot=data.get("previous_snapshot"),
            new_snapshot=data.get("new_snapshot"),
            rollback_available=data.get("rollback_available", False),
            rule_id=data.get("rule_id"),
            created_at=data.get("created_at", utc_now()),
        )


@dataclass
class NoOp:
    """A document that was looked at but yields no job."""

    document_id: str
    reason: SkipReason
    detail: str = ""


@dataclass
class EvolutionTarget:
    document: Document
    feedback: list[FeedbackSignal]
    good_queries: list[str] = field(default_factory=list)
    content: str = ""
    active_rules: list[InterpretationRule] = field(default_factory=list)

    @property
    def document_id(self) -> str:
        return self.document.document_id

    @property
    def contexts(self) -> list[FeedbackContext]:
        return [FeedbackContext.from_signal(f) for f in self.feedback]


@dataclass
class TargetScan:
    targets: list[EvolutionTarget] = field(default_factory=list)
    skipped: list[NoOp] = field(default_factory=list)


@dataclass
class SyntheticQuestion:
    question: str
    category: QuestionCategory
    difficulty: Difficulty = Difficulty.MEDIUM
    expected_topics: list[str] = field(default_factory=list)
    rationale: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["difficulty"] = self.difficulty.value
        return data


@dataclass
class SelfEvaluationResult:
    question: SyntheticQuestion
    comparison: Comparison

    @property
    def without_rules_score(self) -> float:
        return self.comparison.baseline_scores.mean

    @property
    def with_rules_score(self) -> float:
        return self.comparison.candidate_scores.mean


@dataclass
class Weakness:
    type: WeaknessType
    description: str
    suggested_rule_type: RuleType
    affected_questions: list[str] = field(default_factory=list)
    confidence: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "suggested_rule_type": self.suggested_rule_type.value,
            "affected_questions": list(self.affected_questions),
            "confidence": self.confidence,
        }


@dataclass
class SelfEvolutionJob:
    document_id: str
    status: SelfEvolutionStatus = SelfEvolutionStatus.PENDING
    questions: list[SyntheticQuestion] = field(default_factory=list)
    evaluations: list[SelfEvaluationResult] = field(default_factory=list)
    weaknesses: list[Weakness] = field(default_factory=list)
    candidates: list[Candidate] = field(default_factory=list)
    improvement_rates: dict[str, float] = field(default_factory=dict)
    adopted_rules: list[InterpretationRule] = field(default_factory=list)
    avg_improvement: float = 0.0
    error: str | None = None
    id: str = field(default_factory=new_id)
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "status": self.status.value,
            "questions": [q.to_dict() for q in self.questions],
            "weaknesses": [w.to_dict() for w in self.weaknesses],
            "candidates": [c.to_dict() for c in self.candidates],
            "improvement_rates": dict(self.improvement_rates),
            "adopted_rule_ids": [r.id for r in self.adopted_rules],
            "avg_improvement": self.avg_improvement,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class RuleStats:
    total_rules: int = 0
    enabled_rules: int = 0
    rules_by_type: dict[str, int] = field(default_factory=dict)
    avg_score: float = 0.0
    total_applications: int = 0
    positive_feedback_rate: float = 0.0


@dataclass
class LedgerConfig:
    delta_up: float = 0.05
    delta_down: float = 0.10
    initial_score: float = 0.5
    disable_below: float | None = 0.2


@dataclass
class SelfEvolutionConfig:
    categories: list[QuestionCategory] = field(default_factory=lambda: list(QuestionCategory))
    questions_per_category: int = 2
    difficulty_mix: dict[Difficulty, float] = field(
        default_factory=lambda: {
            Difficulty.EASY: 0.2,
            Difficulty.MEDIUM: 0.4,
            Difficulty.HARD: 0.3,
            Difficulty.EDGE_CASE: 0.1,
        }
    )
    quality_floor: float = 3.5
    min_rule_delta: float = 0.5
    min_improvement_rate: float = 0.20
    evaluation_rounds: int = 2
    evaluation_sample_size: int = 5
    auto_apply: bool = True
    question_temperature: float = 0.8
    diagnosis_temperature: float = 0.3


@dataclass
class EngineConfig:
    strategy: str = "rewrite"
    generator_model: str = "anthropic/claude-sonnet-4-20250514"
    judge_model: str = "anthropic/claude-sonnet-4-20250514"
    bad_feedback_threshold: int = 3
    evaluation_sample_size: int = 5
    good_sample_size: int = 3
    min_win_margin: float = 0.10
    auto_apply: bool = False
    mutation_kinds: list[MutationKind] = field(
        default_factory=lambda: [
            MutationKind.CLARITY_REWRITE,
            MutationKind.DETAIL_EXPANSION,
            MutationKind.QA_CONVERSION,
        ]
    )
    rule_types: list[RuleType] = field(
        default_factory=lambda: [
            RuleType.CONTEXT,
            RuleType.CLARIFICATION,
            RuleType.MISCONCEPTION,
        ]
    )
    max_concurrent_jobs: int = 2
    max_concurrent_requests: int = 4
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 20.0
    snapshot_limit: int = 10000
    order_bias_mitigation: bool = False
    generation_temperature: float = 0.7
    generation_max_tokens: int = 4096
    answer_temperature: float = 0.5
    answer_max_tokens: int = 1024
    judge_temperature: float = 0.2
    judge_max_tokens: int = 1024
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    self_evolution: SelfEvolutionConfig = field(default_factory=SelfEvolutionConfig)

    @property
    def win_threshold(self) -> float:
        return 0.5 + self.min_win_margin
