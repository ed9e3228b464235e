from __future__ import annotations

import asyncio
import logging

from doc_evolution.core.errors import CompletionError
from doc_evolution.core.protocols import CompletionClient
from doc_evolution.core.types import (
    RuleType,
    SelfEvaluationResult,
    SelfEvolutionConfig,
    Weakness,
    WeaknessType,
)
from doc_evolution.llm.parsing import extract_json
from doc_evolution.self_evolution.prompts import build_diagnosis_prompt

logger = logging.getLogger(__name__)

# Older rule-type names that models still produce
_RULE_TYPE_ALIASES = {
    "misunderstanding": RuleType.MISCONCEPTION,
    "related": RuleType.CROSS_REFERENCE,
    "cross-reference": RuleType.CROSS_REFERENCE,
}


def _rule_type(value: object) -> RuleType:
    name = str(value or "").strip().lower()
    if name in _RULE_TYPE_ALIASES:
        return _RULE_TYPE_ALIASES[name]
    try:
        return RuleType(name)
    except ValueError:
        return RuleType.CONTEXT


def _weakness_type(value: object) -> WeaknessType:
    try:
        return WeaknessType(str(value or "").strip().lower())
    except ValueError:
        return WeaknessType.AMBIGUOUS


def parse_weakness(response: str, question: str) -> Weakness:
    """Parse a diagnosis; anything unreadable becomes a low-information default."""
    try:
        data = extract_json(response, dict)
    except ValueError:
        data = {}

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        confidence = 0.5

    return Weakness(
        type=_weakness_type(data.get("type")),
        description=str(data.get("description") or "Unknown weakness"),
        suggested_rule_type=_rule_type(data.get("suggested_rule_type")),
        affected_questions=[question],
        confidence=max(0.0, min(1.0, float(confidence))),
    )


def consolidate_weaknesses(weaknesses: list[Weakness]) -> list[Weakness]:
    """Merge weaknesses sharing (type, suggested rule type), highest confidence first."""
    merged: dict[tuple[WeaknessType, RuleType], Weakness] = {}
    for weakness in weaknesses:
        key = (weakness.type, weakness.suggested_rule_type)
        existing = merged.get(key)
        if existing is None:
            merged[key] = Weakness(
                type=weakness.type,
                description=weakness.description,
                suggested_rule_type=weakness.suggested_rule_type,
                affected_questions=list(weakness.affected_questions),
                confidence=weakness.confidence,
            )
            continue
        for question in weakness.affected_questions:
            if question not in existing.affected_questions:
                existing.affected_questions.append(question)
        existing.confidence = max(existing.confidence, weakness.confidence)

    return sorted(merged.values(), key=lambda w: w.confidence, reverse=True)


class WeaknessDiagnoser:
    def __init__(self, llm: CompletionClient, config: SelfEvolutionConfig, max_tokens: int = 512) -> None:
        self.llm = llm
        self.config = config
        self.max_tokens = max_tokens

    def classify(self, result: SelfEvaluationResult, has_rules: bool) -> tuple[bool, bool]:
        """Return (is_weak, rules_did_not_help) for one evaluated question."""
        without = result.without_rules_score
        with_rules = result.with_rules_score
        weak = without < self.config.quality_floor
        persistent = (
            has_rules
            and with_rules < self.config.quality_floor
            and with_rules - without < self.config.min_rule_delta
        )
        return weak or persistent, persistent

    async def find_weaknesses(
        self, results: list[SelfEvaluationResult], has_rules: bool
    ) -> list[Weakness]:
        flagged = []
        for result in results:
            weak, persistent = self.classify(result, has_rules)
            if weak:
                flagged.append((result, persistent))

        logger.info("%d of %d question(s) flagged as weak", len(flagged), len(results))
        diagnoses = await asyncio.gather(*(self.diagnose(r, p) for r, p in flagged))
        return consolidate_weaknesses([d for d in diagnoses if d is not None])

    async def diagnose(self, result: SelfEvaluationResult, persistent: bool) -> Weakness | None:
        system, user = build_diagnosis_prompt(result, persistent)
        logger.debug("=== DIAGNOSIS ===\nUSER PROMPT:\n%s", user)
        try:
            response = await self.llm.complete(
                system,
                user,
                temperature=self.config.diagnosis_temperature,
                max_tokens=self.max_tokens,
            )
        except CompletionError as e:
            logger.warning("Diagnosis failed for %r: %s", result.question.question[:80], e)
            return None

        logger.debug("RESPONSE:\n%s", response)
        return parse_weakness(response, result.question.question)
