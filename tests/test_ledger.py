from __future__ import annotations

import asyncio
import itertools

import pytest

from doc_evolution.core.ledger import FitnessLedger, ledger_score
from doc_evolution.core.types import InterpretationRule, LedgerConfig, Rating, RuleType


async def add_rule(store, score: float = 0.5) -> InterpretationRule:
    rule = InterpretationRule(
        document_id="doc-1",
        rule_type=RuleType.CONTEXT,
        content="Leave requests go through HR.",
        score=score,
    )
    await store.insert("rules", rule.to_dict())
    return rule


@pytest.mark.asyncio
async def test_two_good_then_one_bad(store):
    rule = await add_rule(store)
    ledger = FitnessLedger(store)

    await ledger.apply(rule.id, "fb-1", Rating.GOOD)
    await ledger.apply(rule.id, "fb-2", Rating.GOOD)
    updated = await ledger.apply(rule.id, "fb-3", Rating.BAD)

    assert updated.score == pytest.approx(0.50)
    row = await store.get("rules", rule.id)
    assert row["score"] == pytest.approx(0.50)
    assert (row["good_events"], row["bad_events"]) == (2, 1)


@pytest.mark.asyncio
async def test_same_feedback_is_counted_once(store):
    rule = await add_rule(store)
    ledger = FitnessLedger(store)

    first = await ledger.apply(rule.id, "fb-1", Rating.GOOD)
    again = await ledger.apply(rule.id, "fb-1", Rating.GOOD)
    flipped = await ledger.apply(rule.id, "fb-1", Rating.BAD)

    assert first.score == pytest.approx(0.55)
    assert again is None
    assert flipped is None
    assert (await store.get("rules", rule.id))["score"] == pytest.approx(0.55)


@pytest.mark.asyncio
async def test_equal_good_and_bad_never_raise_score(store):
    config = LedgerConfig(disable_below=None)
    events = [Rating.GOOD] * 3 + [Rating.BAD] * 3
    finals = set()

    for n, order in enumerate(set(itertools.permutations(events))):
        rule = await add_rule(store)
        ledger = FitnessLedger(store, config)
        for i, rating in enumerate(order):
            await ledger.apply(rule.id, f"fb-{n}-{i}", rating)
        score = (await store.get("rules", rule.id))["score"]
        assert score <= 0.5
        finals.add(score)

    # Same final score whatever the order
    assert len(finals) == 1


@pytest.mark.asyncio
async def test_scores_stay_in_bounds(store):
    config = LedgerConfig(disable_below=None)
    high = await add_rule(store, score=0.98)
    low = await add_rule(store, score=0.05)
    ledger = FitnessLedger(store, config)

    for i in range(5):
        await ledger.apply(high.id, f"up-{i}", Rating.GOOD)
        await ledger.apply(low.id, f"down-{i}", Rating.BAD)

    assert (await store.get("rules", high.id))["score"] == 1.0
    assert (await store.get("rules", low.id))["score"] == 0.0


@pytest.mark.asyncio
async def test_concurrent_events_are_not_lost(store):
    rule = await add_rule(store)
    ledger = FitnessLedger(store, LedgerConfig(disable_below=None))

    ratings = [Rating.GOOD] * 6 + [Rating.BAD] * 2
    await asyncio.gather(
        *(ledger.apply(rule.id, f"fb-{i}", r) for i, r in enumerate(ratings))
    )

    row = await store.get("rules", rule.id)
    assert (row["good_events"], row["bad_events"]) == (6, 2)
    assert row["score"] == pytest.approx(0.5 + 0.30 - 0.20)
    assert row["version"] == 8
    assert len(await store.select("attributions", rule_id=rule.id)) == 8


@pytest.mark.asyncio
async def test_rule_is_disabled_at_floor(store):
    rule = await add_rule(store)
    ledger = FitnessLedger(store, LedgerConfig(disable_below=0.2))

    await ledger.apply(rule.id, "fb-1", Rating.BAD)
    await ledger.apply(rule.id, "fb-2", Rating.BAD)
    assert (await store.get("rules", rule.id))["enabled"] is True

    updated = await ledger.apply(rule.id, "fb-3", Rating.BAD)
    assert updated.enabled is False
    row = await store.get("rules", rule.id)
    assert row["enabled"] is False
    assert row["score"] == pytest.approx(0.2)


@pytest.mark.asyncio
async def test_unknown_rule_is_ignored(store):
    assert await FitnessLedger(store).apply("missing", "fb-1", Rating.GOOD) is None


def test_ledger_score_is_clamped():
    config = LedgerConfig()
    assert ledger_score(0.5, 0, 0, config) == 0.5
    assert ledger_score(0.5, 100, 0, config) == 1.0
    assert ledger_score(0.5, 0, 100, config) == 0.0
