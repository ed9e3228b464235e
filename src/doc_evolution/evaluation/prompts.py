from __future__ import annotations

from typing import TYPE_CHECKING

from doc_evolution.core.types import RuleType

if TYPE_CHECKING:
    from doc_evolution.core.types import InterpretationRule

ANSWER_SYSTEM_PROMPT = (
    "You are an internal knowledge-base assistant. Answer the user's question "
    "accurately using the reference document. If the document does not cover "
    "something, say so plainly instead of guessing."
)

JUDGE_SYSTEM_PROMPT = (
    "You are an impartial judge comparing two answers to the same question. "
    "Score each answer from 1 to 5 on three criteria:\n"
    "- helpfulness: practical, actionable help for the question\n"
    "- correctness: accurate and free of errors\n"
    "- coherence: logical, well organised and easy to read\n\n"
    "You MUST respond with valid JSON only, in this shape:\n"
    '{"winner": "A" or "B" or "TIE", '
    '"scores": {"A": {"helpfulness": 1-5, "correctness": 1-5, "coherence": 1-5}, '
    '"B": {"helpfulness": 1-5, "correctness": 1-5, "coherence": 1-5}}, '
    '"reasoning": "...", "suggestions": ["..."]}\n'
    '"suggestions" lists concrete improvements to the weaker answer\'s source material.'
)

# Order in which rule groups appear in the answer prompt
_GUIDE_SECTIONS: dict[RuleType, str] = {
    RuleType.CONTEXT: "Background and prerequisites",
    RuleType.CLARIFICATION: "How to read ambiguous wording",
    RuleType.MISCONCEPTION: "Common misconceptions (take care)",
    RuleType.FORMAT: "Answer format",
    RuleType.CROSS_REFERENCE: "Related material",
}


def build_interpretation_guide(rules: list[InterpretationRule]) -> str:
    if not rules:
        return ""

    sections = []
    for rule_type, heading in _GUIDE_SECTIONS.items():
        lines = [f"- {r.content}" for r in rules if r.rule_type is rule_type]
        if lines:
            sections.append(f"### {heading}\n" + "\n".join(lines))

    return "## Interpretation guide (apply when answering)\n\n" + "\n\n".join(sections)


def build_answer_prompt(
    question: str, content: str, rules: list[InterpretationRule] | None = None
) -> tuple[str, str]:
    """Build system and user prompts for answering from a document."""
    user = f"## Reference document\n{content}\n\n"

    guide = build_interpretation_guide(rules or [])
    if guide:
        user += f"{guide}\n\n"

    user += (
        f"## Question\n{question}\n\n"
        "Answer concisely and accurately, based on the reference document"
    )
    user += " and the interpretation guide." if guide else "."
    return ANSWER_SYSTEM_PROMPT, user


def build_judge_prompt(question: str, response_a: str, response_b: str) -> tuple[str, str]:
    """Build system and user prompts for the pairwise verdict."""
    user = (
        f"## Question\n{question}\n\n"
        f"## Response A\n{response_a}\n\n"
        f"## Response B\n{response_b}\n\n"
        "Compare Response A and Response B. Respond with JSON only."
    )
    return JUDGE_SYSTEM_PROMPT, user
