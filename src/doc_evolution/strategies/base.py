from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from doc_evolution.core.protocols import Adopter, CandidateGenerator

if TYPE_CHECKING:
    from doc_evolution.core.protocols import CompletionClient, ContentSource, Store
    from doc_evolution.core.types import EngineConfig


@dataclass
class StrategyComponents:
    generator: CandidateGenerator
    adopter: Adopter


class StrategyPlugin:
    name: str
    description: str

    def create_components(
        self,
        config: EngineConfig,
        llm: CompletionClient,
        store: Store,
        content_source: ContentSource,
    ) -> StrategyComponents:
        raise NotImplementedError
