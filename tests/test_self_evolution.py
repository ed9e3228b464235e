from __future__ import annotations

import json

import pytest

from doc_evolution.core.errors import ApprovalError, CompletionTimeoutError
from doc_evolution.core.types import (
    Comparison,
    Document,
    EngineConfig,
    MetricScores,
    NoOp,
    QuestionCategory,
    RuleType,
    SelfEvaluationResult,
    SelfEvolutionConfig,
    SelfEvolutionStatus,
    SkipReason,
    SyntheticQuestion,
    Weakness,
    WeaknessType,
    Winner,
)
from doc_evolution.evaluation.judge import PairwiseJudge
from doc_evolution.evaluation.prompts import ANSWER_SYSTEM_PROMPT, JUDGE_SYSTEM_PROMPT
from doc_evolution.self_evolution.diagnosis import (
    WeaknessDiagnoser,
    consolidate_weaknesses,
    parse_weakness,
)
from doc_evolution.self_evolution.prompts import DIAGNOSIS_SYSTEM_PROMPT, QUESTION_SYSTEM_PROMPT
from doc_evolution.self_evolution.questions import SyntheticQuestionGenerator, parse_questions
from doc_evolution.self_evolution.workflow import SelfEvolutionOrchestrator
from doc_evolution.service import EvolutionService
from doc_evolution.strategies.interpretation.generator import RuleGenerator
from doc_evolution.strategies.interpretation.prompts import RULE_SYSTEM_PROMPT

CONTEXT_RULE = "Leave requests go through HR."
CLARIFICATION_RULE = "Promptly means within 3 business days."

CATEGORIES = [QuestionCategory.FACTUAL, QuestionCategory.PROCEDURAL, QuestionCategory.COMPARISON]


def section(user: str, heading: str) -> str:
    return user.split(f"## {heading}\n")[1].split("\n\n")[0]


class ScriptedModel:
    """Plays every role in a self-evolution run for one leave-policy document.

    Without rules, the factual and procedural questions get weak answers.
    The context rule lifts answers from 4 to 5; the clarification rule
    only nudges coherence from 4 to 5.
    """

    def __init__(self, verdict) -> None:
        self.verdict = verdict

    def __call__(self, system: str, user: str) -> str:
        if system == QUESTION_SYSTEM_PROMPT:
            category = user.split()[2]
            return json.dumps([{"question": f"What about {category}?", "difficulty": "easy"}])

        if system == ANSWER_SYSTEM_PROMPT:
            if CONTEXT_RULE in user:
                return "answer CTX"
            if CLARIFICATION_RULE in user:
                return "answer CLR"
            return "plain answer"

        if system == JUDGE_SYSTEM_PROMPT:
            question = section(user, "Question")
            response_b = section(user, "Response B")
            if response_b == "answer CTX":
                return self.verdict("B", a=(4, 4, 4), b=(5, 5, 5))
            if response_b == "answer CLR":
                return self.verdict("B", a=(4, 4, 4), b=(4, 4, 5))
            if question == "What about comparison?":
                return self.verdict("TIE", a=(4, 4, 4), b=(4, 4, 4))
            return self.verdict("TIE", a=(2, 2, 2), b=(2, 2, 2))

        if system == DIAGNOSIS_SYSTEM_PROMPT:
            if section(user, "Question") == "What about factual?":
                return json.dumps(
                    {
                        "type": "missing_context",
                        "description": "Never says who handles requests",
                        "suggested_rule_type": "context",
                        "confidence": 0.9,
                    }
                )
            return json.dumps(
                {
                    "type": "ambiguous",
                    "description": "'promptly' is undefined",
                    "suggested_rule_type": "clarification",
                    "confidence": 0.7,
                }
            )

        if system == RULE_SYSTEM_PROMPT:
            if "type 'context'" in user:
                return json.dumps({"content": CONTEXT_RULE, "trigger_pattern": None})
            return json.dumps({"content": CLARIFICATION_RULE, "trigger_pattern": None})

        raise AssertionError(f"unexpected prompt: {system[:40]}")


def make_orchestrator(store, source, llm, auto_apply: bool = True) -> SelfEvolutionOrchestrator:
    settings = SelfEvolutionConfig(categories=CATEGORIES, questions_per_category=1, auto_apply=auto_apply)
    config = EngineConfig(self_evolution=settings)
    return SelfEvolutionOrchestrator(
        store,
        source,
        SyntheticQuestionGenerator(llm, settings),
        WeaknessDiagnoser(llm, settings),
        RuleGenerator(llm, config),
        PairwiseJudge(llm, config),
        config,
    )


async def register(store) -> None:
    await store.insert("documents", Document("doc-1", name="Leave policy").to_dict())


@pytest.mark.asyncio
async def test_only_rules_that_lift_scores_are_adopted(store, source, make_llm, verdict):
    await register(store)
    orchestrator = make_orchestrator(store, source, make_llm(ScriptedModel(verdict)))

    [job] = await orchestrator.run("doc-1")

    assert job.status is SelfEvolutionStatus.COMPLETED
    assert [q.question for q in job.questions] == [
        "What about factual?",
        "What about procedural?",
        "What about comparison?",
    ]
    assert [(w.type, w.suggested_rule_type) for w in job.weaknesses] == [
        (WeaknessType.MISSING_CONTEXT, RuleType.CONTEXT),
        (WeaknessType.AMBIGUOUS, RuleType.CLARIFICATION),
    ]

    context, clarification = job.candidates
    assert job.improvement_rates[context.id] == pytest.approx(0.25)
    assert job.improvement_rates[clarification.id] == pytest.approx(1 / 12)
    assert job.avg_improvement == pytest.approx((0.25 + 1 / 12) / 2)

    [rule] = job.adopted_rules
    assert rule.content == CONTEXT_RULE
    assert rule.score == pytest.approx(0.75)
    assert rule.generation == 1

    rows = await store.select("rules", document_id="doc-1")
    assert [r["content"] for r in rows] == [CONTEXT_RULE]
    assert (await store.get("documents", "doc-1"))["generation"] == 1

    [history] = await store.select("history", document_id="doc-1")
    assert history["outcome"] == "self_evolution"
    assert history["generation"] == 1
    assert history["rule_id"] == rule.id
    assert history["mean_score"] == pytest.approx(job.avg_improvement)

    stored = await store.get("self_jobs", job.id)
    assert stored["status"] == "completed"
    assert stored["adopted_rule_ids"] == [rule.id]


@pytest.mark.asyncio
async def test_document_is_never_rewritten(store, source, make_llm, verdict):
    await register(store)
    await make_orchestrator(store, source, make_llm(ScriptedModel(verdict))).run("doc-1")
    assert source.updates == []


@pytest.mark.asyncio
async def test_without_auto_apply_nothing_is_adopted(store, source, make_llm, verdict):
    await register(store)
    orchestrator = make_orchestrator(store, source, make_llm(ScriptedModel(verdict)), auto_apply=False)

    [job] = await orchestrator.run("doc-1")

    assert job.status is SelfEvolutionStatus.COMPLETED
    assert job.adopted_rules == []
    assert await store.select("rules") == []
    assert (await store.get("documents", "doc-1"))["generation"] == 0
    [history] = await store.select("history")
    assert history["generation"] == 0


@pytest.mark.asyncio
async def test_accepted_rules_can_be_approved_later(store, source, make_llm, verdict):
    await register(store)
    orchestrator = make_orchestrator(store, source, make_llm(ScriptedModel(verdict)), auto_apply=False)
    [job] = await orchestrator.run("doc-1")

    [record] = await orchestrator.approve(job.id)

    rule = await store.get("rules", record.rule_id)
    assert rule["content"] == CONTEXT_RULE
    assert rule["score"] == pytest.approx(0.75)
    assert rule["generation"] == 1
    assert record.outcome.value == "adopted"
    assert record.rollback_available
    assert (await store.get("documents", "doc-1"))["generation"] == 1
    with pytest.raises(ApprovalError, match="already applied"):
        await orchestrator.approve(job.id)
    with pytest.raises(ApprovalError, match="not found"):
        await orchestrator.approve("missing")

    service = EvolutionService(store, source, make_llm(), make_llm(), EngineConfig())
    await service.rollback(record.id)
    assert (await store.get("rules", record.rule_id))["enabled"] is False


@pytest.mark.asyncio
async def test_strong_document_yields_no_rules(store, source, make_llm, verdict):
    await register(store)
    def handler(system, user):
        if system == JUDGE_SYSTEM_PROMPT:
            return verdict("TIE", a=(5, 5, 5), b=(5, 5, 5))
        return ScriptedModel(verdict)(system, user)

    llm = make_llm(handler)
    [job] = await make_orchestrator(store, source, llm).run("doc-1")

    assert job.status is SelfEvolutionStatus.COMPLETED
    assert job.weaknesses == []
    assert job.candidates == []
    assert not any(call[0] == DIAGNOSIS_SYSTEM_PROMPT for call in llm.calls)
    assert await store.select("history") == []


@pytest.mark.asyncio
async def test_unknown_document_is_skipped(store, source, make_llm, verdict):
    [result] = await make_orchestrator(store, source, make_llm(ScriptedModel(verdict))).run("ghost")
    assert isinstance(result, NoOp)
    assert result.reason is SkipReason.DOCUMENT_NOT_FOUND
    assert await store.select("self_jobs") == []


@pytest.mark.asyncio
async def test_question_failure_fails_job(store, source, make_llm):
    await register(store)
    llm = make_llm(lambda s, u: CompletionTimeoutError("timed out"))

    [job] = await make_orchestrator(store, source, llm).run("doc-1")

    assert job.status is SelfEvolutionStatus.FAILED
    assert (await store.get("self_jobs", job.id))["status"] == "failed"


def evaluated(question: str, without: float, with_rules: float) -> SelfEvaluationResult:
    return SelfEvaluationResult(
        question=SyntheticQuestion(question, QuestionCategory.FACTUAL),
        comparison=Comparison(
            question=question,
            winner=Winner.TIE,
            baseline_scores=MetricScores(without, without, without),
            candidate_scores=MetricScores(with_rules, with_rules, with_rules),
        ),
    )


class TestWeaknessDiagnoser:
    def test_classify(self, make_llm):
        diagnoser = WeaknessDiagnoser(make_llm(), SelfEvolutionConfig())

        assert diagnoser.classify(evaluated("q", 3.0, 3.0), has_rules=False) == (True, False)
        assert diagnoser.classify(evaluated("q", 4.0, 4.0), has_rules=False) == (False, False)
        # Rules barely moved a weak answer
        assert diagnoser.classify(evaluated("q", 3.0, 3.2), has_rules=True) == (True, True)
        # Rules fixed it
        assert diagnoser.classify(evaluated("q", 3.0, 4.0), has_rules=True) == (True, False)

    @pytest.mark.asyncio
    async def test_failed_diagnosis_is_dropped(self, make_llm):
        diagnoser = WeaknessDiagnoser(make_llm(lambda s, u: CompletionTimeoutError("x")), SelfEvolutionConfig())
        assert await diagnoser.find_weaknesses([evaluated("q", 1.0, 1.0)], has_rules=False) == []


def test_consolidate_merges_same_kind():
    merged = consolidate_weaknesses(
        [
            Weakness(WeaknessType.AMBIGUOUS, "first", RuleType.CLARIFICATION, ["q1"], 0.4),
            Weakness(WeaknessType.MISSING_CONTEXT, "ctx", RuleType.CONTEXT, ["q2"], 0.6),
            Weakness(WeaknessType.AMBIGUOUS, "second", RuleType.CLARIFICATION, ["q3", "q1"], 0.8),
        ]
    )

    assert [w.type for w in merged] == [WeaknessType.AMBIGUOUS, WeaknessType.MISSING_CONTEXT]
    assert merged[0].affected_questions == ["q1", "q3"]
    assert merged[0].confidence == 0.8
    assert merged[0].description == "first"


class TestParsing:
    def test_weakness_defaults(self):
        weakness = parse_weakness("no idea", "q")
        assert weakness.type is WeaknessType.AMBIGUOUS
        assert weakness.suggested_rule_type is RuleType.CONTEXT
        assert weakness.confidence == 0.5
        assert weakness.affected_questions == ["q"]

    def test_weakness_aliases_and_clamp(self):
        weakness = parse_weakness('{"type": "misleading", "suggested_rule_type": "misunderstanding", "confidence": 3}', "q")
        assert weakness.type is WeaknessType.MISLEADING
        assert weakness.suggested_rule_type is RuleType.MISCONCEPTION
        assert weakness.confidence == 1.0

    def test_questions_drop_invalid_items(self):
        response = json.dumps(
            [
                {"question": "How long is parental leave?", "difficulty": "HARD", "expected_topics": ["parental"]},
                {"question": "   "},
                "not an object",
                {"question": "Who approves?", "difficulty": "impossible"},
            ]
        )
        questions = parse_questions(response, QuestionCategory.FACTUAL)
        assert [q.question for q in questions] == ["How long is parental leave?", "Who approves?"]
        assert questions[0].expected_topics == ["parental"]
        assert questions[1].difficulty.value == "medium"
