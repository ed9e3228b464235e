from __future__ import annotations

from doc_evolution.core.types import Comparison, EvaluationResult, MetricScores, Winner

# Float tolerance when comparing a win rate against the gate
_EPSILON = 1e-9


def aggregate(candidate_id: str, comparisons: list[Comparison]) -> EvaluationResult:
    """Fold a candidate's comparisons into one EvaluationResult.

    Ties count toward the sample but never toward wins. An empty sample
    yields a zero win rate.
    """
    wins = sum(1 for c in comparisons if c.winner is Winner.B)
    losses = sum(1 for c in comparisons if c.winner is Winner.A)
    ties = len(comparisons) - wins - losses
    total = len(comparisons)

    per_metric = MetricScores.average([c.candidate_scores for c in comparisons])
    baseline = MetricScores.average([c.baseline_scores for c in comparisons])

    return EvaluationResult(
        candidate_id=candidate_id,
        win_rate=wins / total if total else 0.0,
        mean_score=per_metric.mean if total else 0.0,
        per_metric_scores=per_metric,
        sample_count=total,
        wins=wins,
        losses=losses,
        ties=ties,
        baseline_mean_score=baseline.mean if total else 0.0,
    )


def passes_gate(result: EvaluationResult, min_win_margin: float) -> bool:
    if result.sample_count == 0:
        return False
    return result.win_rate + _EPSILON >= 0.5 + min_win_margin


def select_winner(
    results: list[EvaluationResult], min_win_margin: float
) -> EvaluationResult | None:
    """Pick the best result that clears 0.5 + min_win_margin.

    Highest win rate wins; equal win rates fall back to mean score. Returns
    None when nothing clears the gate.
    """
    eligible = [r for r in results if passes_gate(r, min_win_margin)]
    if not eligible:
        return None
    return max(eligible, key=lambda r: (r.win_rate, r.mean_score))


def improvement_rate(baseline_score: float, candidate_score: float) -> float:
    """Relative improvement of candidate over baseline, 0 for a non-positive baseline."""
    if baseline_score <= 0:
        return 0.0
    return (candidate_score - baseline_score) / baseline_score
