from __future__ import annotations

import json
from typing import TYPE_CHECKING

from doc_evolution.core.types import Difficulty, QuestionCategory, RuleType, WeaknessType

if TYPE_CHECKING:
    from doc_evolution.core.types import SelfEvaluationResult

CATEGORY_DESCRIPTIONS: dict[QuestionCategory, str] = {
    QuestionCategory.FACTUAL: 'fact lookups ("Where is X stated?", "What is the value of Y?")',
    QuestionCategory.PROCEDURAL: 'how-to questions ("What are the steps to X?", "How do I Y?")',
    QuestionCategory.CLARIFICATION: 'pinning down vague points ("What exactly counts as X?", "Under what conditions does Y apply?")',
    QuestionCategory.COMPARISON: 'comparisons ("How do X and Y differ?", "Which applies here, X or Y?")',
    QuestionCategory.EDGE_CASE: 'exceptions and boundaries ("What happens if X?", "Are there exceptions to Y?")',
    QuestionCategory.IMPLICIT: "questions that need background knowledge the document assumes but never states",
}

DIFFICULTY_DESCRIPTIONS: dict[Difficulty, str] = {
    Difficulty.EASY: "easy: answered directly by the document",
    Difficulty.MEDIUM: "medium: needs several parts of the document combined",
    Difficulty.HARD: "hard: needs careful reading or inference",
    Difficulty.EDGE_CASE: "edge case: boundary conditions or unusual situations",
}

assert set(CATEGORY_DESCRIPTIONS) == set(QuestionCategory)
assert set(DIFFICULTY_DESCRIPTIONS) == set(Difficulty)

QUESTION_SYSTEM_PROMPT = (
    "You write test questions for an internal Q&A assistant. Questions must sound like "
    "real users and target the parts of a document most likely to be misread. "
    "You MUST respond with a JSON array only."
)

DIAGNOSIS_SYSTEM_PROMPT = (
    "You diagnose weaknesses in internal documentation from evaluation results. "
    "You MUST respond with valid JSON only."
)

# Characters of document text included in question prompts
_CONTENT_LIMIT = 8000


def build_question_prompt(
    document_name: str,
    content: str,
    category: QuestionCategory,
    count: int,
    difficulty_mix: dict[Difficulty, float],
) -> tuple[str, str]:
    breakdown = "\n".join(
        f"- {DIFFICULTY_DESCRIPTIONS[d]}: {round(count * ratio)}"
        for d, ratio in difficulty_mix.items()
    )
    user = (
        f"Write {count} {category.value} questions about the document below.\n\n"
        f"## Category\n{CATEGORY_DESCRIPTIONS[category]}\n\n"
        f"## Difficulty mix\n{breakdown}\n\n"
        f"## Document: {document_name}\n{content[:_CONTENT_LIMIT]}\n\n"
        "## Output\n"
        "A JSON array, one object per question:\n"
        '[{"question": "...", "difficulty": "easy|medium|hard|edge_case", '
        '"expected_topics": ["..."], "rationale": "why this question matters"}]'
    )
    return QUESTION_SYSTEM_PROMPT, user


def build_diagnosis_prompt(result: SelfEvaluationResult, persistent: bool) -> tuple[str, str]:
    comparison = result.comparison
    user = (
        f"## Question\n{result.question.question}\n\n"
        "## Evaluation\n"
        f"- Without rules: {json.dumps(comparison.baseline_scores.to_dict())}\n"
        f"- With rules: {json.dumps(comparison.candidate_scores.to_dict())}\n"
        f"- Reasoning: {comparison.reasoning}\n"
        f"- Suggestions: {', '.join(comparison.suggestions) or '(none)'}\n\n"
    )
    if persistent:
        user += (
            "Note: the existing interpretation rules did not fix this. "
            "Look for a more fundamental problem.\n\n"
        )
    user += (
        "## Output\n"
        "Respond with JSON only:\n"
        '{"type": "' + '" | "'.join(w.value for w in WeaknessType) + '", '
        '"description": "what is wrong", '
        '"suggested_rule_type": "' + '" | "'.join(r.value for r in RuleType) + '", '
        '"confidence": 0.0-1.0}'
    )
    return DIAGNOSIS_SYSTEM_PROMPT, user
