import random

import pytest

from doc_evolution.core.selector import aggregate, improvement_rate, passes_gate, select_winner
from doc_evolution.core.types import Comparison, EvaluationResult, MetricScores, Winner


def comparison(winner: Winner, candidate_score: float = 3.0, baseline_score: float = 3.0) -> Comparison:
    return Comparison(
        question="q",
        winner=winner,
        baseline_scores=MetricScores(baseline_score, baseline_score, baseline_score),
        candidate_scores=MetricScores(candidate_score, candidate_score, candidate_score),
    )


def result(candidate_id: str, win_rate: float, mean_score: float = 3.0, samples: int = 10) -> EvaluationResult:
    return EvaluationResult(
        candidate_id=candidate_id,
        win_rate=win_rate,
        mean_score=mean_score,
        per_metric_scores=MetricScores(mean_score, mean_score, mean_score),
        sample_count=samples,
    )


class TestAggregate:
    def test_ties_count_in_denominator_only(self):
        res = aggregate("c", [comparison(Winner.B), comparison(Winner.TIE), comparison(Winner.TIE), comparison(Winner.A)])
        assert res.win_rate == pytest.approx(0.25)
        assert (res.wins, res.losses, res.ties, res.sample_count) == (1, 1, 2, 4)

    def test_mean_score_averages_candidate_metrics(self):
        res = aggregate("c", [comparison(Winner.B, 5.0, 2.0), comparison(Winner.A, 3.0, 4.0)])
        assert res.mean_score == pytest.approx(4.0)
        assert res.baseline_mean_score == pytest.approx(3.0)
        assert res.per_metric_scores.correctness == pytest.approx(4.0)

    def test_empty_sample(self):
        res = aggregate("c", [])
        assert res.win_rate == 0.0
        assert res.mean_score == 0.0
        assert res.sample_count == 0

    def test_win_rate_bounds(self):
        rng = random.Random(7)
        for _ in range(200):
            outcomes = [rng.choice(list(Winner)) for _ in range(rng.randint(0, 12))]
            res = aggregate("c", [comparison(w) for w in outcomes])
            assert 0.0 <= res.win_rate <= 1.0
            assert 0.0 <= res.mean_score <= 5.0


class TestSelectWinner:
    def test_threshold_is_inclusive(self):
        assert passes_gate(result("c", 0.6), 0.10)
        assert select_winner([result("c", 3 / 5)], 0.10).candidate_id == "c"

    def test_below_threshold_keeps_baseline(self):
        assert select_winner([result("a", 0.55), result("b", 0.5)], 0.10) is None

    def test_no_candidates(self):
        assert select_winner([], 0.10) is None

    def test_empty_sample_never_wins(self):
        assert select_winner([result("c", 1.0, samples=0)], 0.0) is None

    def test_highest_win_rate_wins(self):
        winner = select_winner([result("a", 0.7, 4.9), result("b", 0.8, 3.0)], 0.10)
        assert winner.candidate_id == "b"

    def test_mean_score_breaks_ties(self):
        winner = select_winner([result("a", 0.8, 3.5), result("b", 0.8, 4.2)], 0.10)
        assert winner.candidate_id == "b"

    def test_raising_margin_never_adds_winners(self):
        rng = random.Random(11)
        fixtures = [
            [result(f"c{i}", rng.random(), rng.uniform(0, 5)) for i in range(rng.randint(0, 4))]
            for _ in range(50)
        ]
        margins = [0.0, 0.05, 0.1, 0.2, 0.3, 0.5]
        adopted = [sum(select_winner(f, m) is not None for f in fixtures) for m in margins]
        assert adopted == sorted(adopted, reverse=True)


class TestImprovementRate:
    def test_relative_lift(self):
        assert improvement_rate(4.0, 5.0) == pytest.approx(0.25)

    def test_regression_is_negative(self):
        assert improvement_rate(4.0, 3.0) == pytest.approx(-0.25)

    def test_zero_baseline(self):
        assert improvement_rate(0.0, 4.0) == 0.0
