from __future__ import annotations

from doc_evolution.core.types import FeedbackContext, MutationKind

MUTATION_SYSTEM_PROMPT = (
    "You improve internal documentation based on user feedback. "
    "You always output the complete revised document as Markdown, with no "
    "preamble, commentary or metadata."
)

# (what the feedback says is wrong, what to do about it)
_MUTATION_INSTRUCTIONS: dict[MutationKind, tuple[str, str]] = {
    MutationKind.CLARITY_REWRITE: (
        "Readers found this document hard to understand.",
        "- Explain jargon the first time it appears\n"
        "- Replace vague wording with concrete statements\n"
        "- Add short examples where they help\n"
        "- Order the information logically",
    ),
    MutationKind.DETAIL_EXPANSION: (
        "Readers found information missing from this document.",
        "- Identify what the questions below needed and add it\n"
        "- Spell out procedures step by step\n"
        "- Include concrete values, limits and deadlines\n"
        "- Note exceptions and caveats",
    ),
    MutationKind.STRUCTURAL_REFORMAT: (
        "Readers found this document hard to navigate.",
        "- Improve the heading hierarchy\n"
        "- Use bullet lists and tables where they fit\n"
        "- Put the most important information first",
    ),
    MutationKind.QA_CONVERSION: (
        "Readers could not get direct answers from this document.",
        "- Add a question-and-answer section reflecting the real questions below\n"
        "- Keep each answer short and specific\n"
        "- Keep the existing content that the answers depend on",
    ),
    MutationKind.MERGE_CROSSOVER: (
        "Two revised versions of this document each fixed some of the problems.",
        "- Combine the strongest parts of both versions into one document\n"
        "- Drop repetition between them\n"
        "- Keep every fact from the current document",
    ),
    MutationKind.EXTRACT_CROSSOVER: (
        "Two revised versions of this document each fixed some of the problems.",
        "- Start from version 1\n"
        "- Bring over only the sections of version 2 that answer the questions below better\n"
        "- Keep every fact from the current document",
    ),
}

assert set(_MUTATION_INSTRUCTIONS) == set(MutationKind), "every mutation kind needs instructions"


def format_feedback(contexts: list[FeedbackContext]) -> str:
    if not contexts:
        return "(no specific feedback)"
    lines = []
    for i, ctx in enumerate(contexts, 1):
        lines.append(f"{i}. Question: {ctx.query}")
        if ctx.response:
            lines.append(f"   Answer given: {ctx.response}")
        lines.append(f"   Problem: {ctx.reason}")
    return "\n".join(lines)


def build_mutation_prompt(
    kind: MutationKind,
    content: str,
    contexts: list[FeedbackContext],
    parents: tuple[str, str] | None = None,
) -> tuple[str, str]:
    """Build system and user prompts for one rewrite of a document.

    Crossover kinds need the two parent variants in `parents`.
    """
    if kind.is_crossover and parents is None:
        raise ValueError(f"{kind.value} needs two parent variants")

    problem, instructions = _MUTATION_INSTRUCTIONS[kind]

    user = f"{problem}\n\n## Current document\n{content}\n\n"
    if parents is not None:
        user += f"## Version 1\n{parents[0]}\n\n## Version 2\n{parents[1]}\n\n"
    user += f"## User feedback\n{format_feedback(contexts)}\n\n"
    user += f"## Instructions\n{instructions}\n\n"
    user += "Output ONLY the revised Markdown document."
    return MUTATION_SYSTEM_PROMPT, user
