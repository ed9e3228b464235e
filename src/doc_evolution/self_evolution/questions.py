from __future__ import annotations

import asyncio
import logging

from doc_evolution.core.errors import CompletionError, GenerationError
from doc_evolution.core.protocols import CompletionClient
from doc_evolution.core.types import Difficulty, QuestionCategory, SelfEvolutionConfig, SyntheticQuestion
from doc_evolution.llm.parsing import extract_json
from doc_evolution.self_evolution.prompts import build_question_prompt

logger = logging.getLogger(__name__)


def parse_questions(response: str, category: QuestionCategory) -> list[SyntheticQuestion]:
    """Parse a JSON array of questions; invalid items are dropped."""
    try:
        items = extract_json(response, list)
    except ValueError:
        return []

    questions = []
    for item in items:
        if not isinstance(item, dict):
            continue
        text = str(item.get("question") or "").strip()
        if not text:
            continue
        try:
            difficulty = Difficulty(str(item.get("difficulty", "")).lower())
        except ValueError:
            difficulty = Difficulty.MEDIUM
        topics = item.get("expected_topics") or []
        questions.append(
            SyntheticQuestion(
                question=text,
                category=category,
                difficulty=difficulty,
                expected_topics=[str(t) for t in topics] if isinstance(topics, list) else [],
                rationale=str(item.get("rationale") or ""),
            )
        )
    return questions


class SyntheticQuestionGenerator:
    def __init__(self, llm: CompletionClient, config: SelfEvolutionConfig, max_tokens: int = 2048) -> None:
        self.llm = llm
        self.config = config
        self.max_tokens = max_tokens

    async def generate(self, document_name: str, content: str) -> list[SyntheticQuestion]:
        """Generate questions for every configured category in parallel.

        Raises GenerationError only if every category call failed.
        """
        categories = self.config.categories
        outcomes = await asyncio.gather(
            *(self._for_category(document_name, content, c) for c in categories)
        )
        if categories and all(q is None for q in outcomes):
            raise GenerationError(f"Question generation failed for every category of {document_name}")

        questions = [q for batch in outcomes if batch for q in batch]
        logger.info("Generated %d synthetic question(s) for %s", len(questions), document_name)
        return questions

    async def _for_category(
        self, document_name: str, content: str, category: QuestionCategory
    ) -> list[SyntheticQuestion] | None:
        system, user = build_question_prompt(
            document_name,
            content,
            category,
            self.config.questions_per_category,
            self.config.difficulty_mix,
        )
        logger.debug("=== QUESTIONS %s ===\nUSER PROMPT:\n%s", category.value, user)

        try:
            response = await self.llm.complete(
                system,
                user,
                temperature=self.config.question_temperature,
                max_tokens=self.max_tokens,
            )
        except CompletionError as e:
            logger.warning("Question generation (%s) failed: %s", category.value, e)
            return None

        logger.debug("RESPONSE:\n%s", response)
        questions = parse_questions(response, category)
        if not questions:
            logger.warning("No usable %s questions in response", category.value)
        return questions[: self.config.questions_per_category]
