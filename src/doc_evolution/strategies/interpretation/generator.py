from __future__ import annotations

import asyncio
import logging

from doc_evolution.core.errors import CompletionError, GenerationError
from doc_evolution.core.protocols import CompletionClient
from doc_evolution.core.types import (
    Candidate,
    EngineConfig,
    EvolutionTarget,
    FeedbackContext,
    RuleType,
)
from doc_evolution.llm.parsing import extract_json
from doc_evolution.strategies.interpretation.prompts import build_rule_prompt

logger = logging.getLogger(__name__)


class RuleGenerator:
    """Produces one interpretation-rule candidate per configured rule type."""

    def __init__(self, llm: CompletionClient, config: EngineConfig) -> None:
        self.llm = llm
        self.config = config

    async def generate(self, target: EvolutionTarget) -> list[Candidate]:
        rule_types = self.config.rule_types
        outcomes = await asyncio.gather(
            *(self._try_generate(target.document_id, target.content, target.contexts, t) for t in rule_types)
        )

        if rule_types and not any(ok for ok, _ in outcomes):
            raise GenerationError(
                f"All {len(rule_types)} rule generation calls failed for {target.document_id}"
            )

        candidates = [c for _, c in outcomes if c is not None]
        logger.info("Generated %d rule candidate(s) for %s", len(candidates), target.document_id)
        return candidates

    async def generate_for_type(
        self,
        document_id: str,
        content: str,
        contexts: list[FeedbackContext],
        rule_type: RuleType,
    ) -> Candidate | None:
        """One rule candidate, or None if the call failed or gave nothing usable."""
        _, candidate = await self._try_generate(document_id, content, contexts, rule_type)
        return candidate

    async def _try_generate(
        self,
        document_id: str,
        content: str,
        contexts: list[FeedbackContext],
        rule_type: RuleType,
    ) -> tuple[bool, Candidate | None]:
        system, user = build_rule_prompt(rule_type, content, contexts)
        logger.debug("=== RULE %s (%s) ===\nUSER PROMPT:\n%s", rule_type.value, document_id, user)

        try:
            response = await self.llm.complete(
                system,
                user,
                temperature=self.config.generation_temperature,
                max_tokens=self.config.generation_max_tokens,
            )
        except CompletionError as e:
            logger.warning("Rule generation (%s) failed for %s: %s", rule_type.value, document_id, e)
            return False, None

        logger.debug("RESPONSE:\n%s", response)
        try:
            data = extract_json(response, dict)
        except ValueError as e:
            logger.warning("Unparsed %s rule for %s: %s", rule_type.value, document_id, e)
            return True, None

        rule_content = str(data.get("content") or "").strip()
        if not rule_content:
            logger.warning("Empty %s rule for %s", rule_type.value, document_id)
            return True, None

        trigger = data.get("trigger_pattern")
        if not isinstance(trigger, str) or not trigger.strip() or trigger.strip().lower() == "null":
            trigger = None

        return True, Candidate(
            source_document_id=document_id,
            kind=rule_type,
            content=rule_content,
            trigger_pattern=trigger.strip() if trigger else None,
            rationale=str(data.get("rationale") or ""),
        )
