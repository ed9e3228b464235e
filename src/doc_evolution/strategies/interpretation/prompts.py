from __future__ import annotations

from doc_evolution.core.types import FeedbackContext, RuleType

RULE_SYSTEM_PROMPT = (
    "You write interpretation rules for an internal Q&A assistant. A rule is a "
    "short note applied when answering from a document; the document itself "
    "is never changed. You MUST respond with valid JSON only."
)

RULE_TYPE_DESCRIPTIONS: dict[RuleType, str] = {
    RuleType.CONTEXT: "Background or prerequisites a reader needs to understand the document.",
    RuleType.CLARIFICATION: (
        'How to read vague wording concretely (e.g. "promptly" means "within 3 business days").'
    ),
    RuleType.FORMAT: "How answers should be shaped (e.g. steps as a numbered list, conclusion first).",
    RuleType.MISCONCEPTION: "A common misunderstanding to warn about (e.g. two similar terms that differ).",
    RuleType.CROSS_REFERENCE: "Related material the reader must check first or alongside.",
}

assert set(RULE_TYPE_DESCRIPTIONS) == set(RuleType), "every rule type needs a description"

# Characters of document and answer text included in the prompt
_CONTENT_LIMIT = 3000
_RESPONSE_LIMIT = 200


def build_rule_prompt(
    rule_type: RuleType, content: str, contexts: list[FeedbackContext]
) -> tuple[str, str]:
    """Build system and user prompts asking for one rule of the given type."""
    feedback_lines = []
    for i, ctx in enumerate(contexts, 1):
        answer = ctx.response[:_RESPONSE_LIMIT]
        if len(ctx.response) > _RESPONSE_LIMIT:
            answer += "..."
        feedback_lines.append(
            f"{i}. Question: {ctx.query}\n   Answer: {answer}\n   Problem: {ctx.reason}"
        )

    user = (
        f"Propose ONE interpretation rule of type {rule_type.value!r}.\n\n"
        f"## What a {rule_type.value} rule is\n{RULE_TYPE_DESCRIPTIONS[rule_type]}\n\n"
        f"## Document\n{content[:_CONTENT_LIMIT]}\n\n"
        f"## Problems observed\n" + ("\n\n".join(feedback_lines) or "(none)") + "\n\n"
        "## Output\n"
        "Respond with JSON only:\n"
        f'{{"rule_type": "{rule_type.value}", "content": "the rule text", '
        '"trigger_pattern": "keyword regex, or null to always apply", '
        '"rationale": "why the rule is needed"}'
    )
    return RULE_SYSTEM_PROMPT, user
