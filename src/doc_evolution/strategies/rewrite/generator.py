from __future__ import annotations

import asyncio
import logging

from doc_evolution.core.errors import CompletionError, GenerationError
from doc_evolution.core.protocols import CompletionClient
from doc_evolution.core.types import Candidate, EngineConfig, EvolutionTarget, MutationKind
from doc_evolution.llm.parsing import strip_code_fence
from doc_evolution.strategies.rewrite.prompts import build_mutation_prompt

logger = logging.getLogger(__name__)


class RewriteGenerator:
    """Produces rewritten variants of a document, one per mutation kind.

    Single-parent kinds run in parallel first. Crossover kinds then run on
    the first two variants produced, and are skipped when fewer exist.
    """

    def __init__(self, llm: CompletionClient, config: EngineConfig) -> None:
        self.llm = llm
        self.config = config

    async def generate(self, target: EvolutionTarget) -> list[Candidate]:
        singles = [k for k in self.config.mutation_kinds if not k.is_crossover]
        crossovers = [k for k in self.config.mutation_kinds if k.is_crossover]

        attempts = 0
        failures = 0

        outcomes = await asyncio.gather(*(self._try_mutate(target, kind) for kind in singles))
        attempts += len(outcomes)
        failures += sum(1 for ok, _ in outcomes if not ok)
        candidates = [c for _, c in outcomes if c is not None]

        if crossovers:
            if len(candidates) >= 2:
                parents = (candidates[0], candidates[1])
                outcomes = await asyncio.gather(
                    *(self._try_mutate(target, kind, parents) for kind in crossovers)
                )
                attempts += len(outcomes)
                failures += sum(1 for ok, _ in outcomes if not ok)
                candidates.extend(c for _, c in outcomes if c is not None)
            else:
                logger.info(
                    "Skipping crossovers for %s: %d parent(s) available",
                    target.document_id, len(candidates),
                )

        if attempts and failures == attempts:
            raise GenerationError(
                f"All {attempts} generation calls failed for {target.document_id}"
            )

        logger.info("Generated %d rewrite candidate(s) for %s", len(candidates), target.document_id)
        return candidates

    async def _try_mutate(
        self,
        target: EvolutionTarget,
        kind: MutationKind,
        parents: tuple[Candidate, Candidate] | None = None,
    ) -> tuple[bool, Candidate | None]:
        """Returns (call succeeded, candidate or None if the output was empty)."""
        system, user = build_mutation_prompt(
            kind,
            target.content,
            target.contexts,
            parents=(parents[0].content, parents[1].content) if parents else None,
        )
        logger.debug("=== MUTATION %s (%s) ===\nUSER PROMPT:\n%s", kind.value, target.document_id, user)

        try:
            response = await self.llm.complete(
                system,
                user,
                temperature=self.config.generation_temperature,
                max_tokens=self.config.generation_max_tokens,
            )
        except CompletionError as e:
            logger.warning("Mutation %s failed for %s: %s", kind.value, target.document_id, e)
            return False, None

        logger.debug("RESPONSE:\n%s", response)
        content = strip_code_fence(response)
        if not content:
            logger.warning("Mutation %s returned empty content", kind.value)
            return True, None

        return True, Candidate(
            source_document_id=target.document_id,
            kind=kind,
            content=content,
            parent_ids=[p.id for p in parents] if parents else [],
        )
