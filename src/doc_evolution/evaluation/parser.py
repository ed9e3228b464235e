from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from doc_evolution.core.types import MetricScores, Winner
from doc_evolution.llm.parsing import Parsed, ParseResult, Unparsed, extract_json

_WINNER_ALIASES = {
    "A": Winner.A,
    "B": Winner.B,
    "TIE": Winner.TIE,
    "DRAW": Winner.TIE,
}


@dataclass
class Verdict:
    winner: Winner
    scores_a: MetricScores
    scores_b: MetricScores
    reasoning: str = ""
    suggestions: list[str] = field(default_factory=list)


def neutral_verdict(reasoning: str = "") -> Verdict:
    return Verdict(
        winner=Winner.TIE,
        scores_a=MetricScores(),
        scores_b=MetricScores(),
        reasoning=reasoning,
    )


def _score(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 3.0
    return max(1.0, min(5.0, number))


def _metric_scores(data: Any) -> MetricScores:
    if not isinstance(data, dict):
        return MetricScores()
    return MetricScores(
        helpfulness=_score(data.get("helpfulness")),
        correctness=_score(data.get("correctness")),
        coherence=_score(data.get("coherence")),
    )


def parse_verdict(response: str) -> ParseResult[Verdict]:
    """Parse a judge response into a Verdict.

    Tries JSON first, falls back to a regex for the winner with neutral
    scores. Returns Unparsed when neither yields a winner.
    """
    try:
        data = extract_json(response, dict)
    except ValueError:
        data = None

    if data is not None:
        winner = _WINNER_ALIASES.get(str(data.get("winner", "")).strip().upper())
        if winner is not None:
            scores = data.get("scores")
            if not isinstance(scores, dict):
                scores = {}
            suggestions = data.get("suggestions")
            if not isinstance(suggestions, list):
                suggestions = []
            return Parsed(
                Verdict(
                    winner=winner,
                    scores_a=_metric_scores(scores.get("A")),
                    scores_b=_metric_scores(scores.get("B")),
                    reasoning=str(data.get("reasoning", "")),
                    suggestions=[str(s) for s in suggestions if s],
                )
            )

    # Regex fallback
    winner_match = re.search(r'"winner"\s*:\s*"(A|B|TIE|DRAW)"', response, re.IGNORECASE)
    if winner_match:
        verdict = neutral_verdict()
        verdict.winner = _WINNER_ALIASES[winner_match.group(1).upper()]
        reasoning_match = re.search(r'"reasoning"\s*:\s*"(.*?)"', response, re.DOTALL)
        if reasoning_match:
            verdict.reasoning = reasoning_match.group(1)
        return Parsed(verdict)

    return Unparsed(raw=response, reason="no winner found in judge response")
