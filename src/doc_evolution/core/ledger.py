from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from doc_evolution.core.errors import PersistenceError
from doc_evolution.core.protocols import Store
from doc_evolution.core.types import InterpretationRule, LedgerConfig, Rating, utc_now

logger = logging.getLogger(__name__)

# Attempts at a compare-and-set before giving up on a contended rule
_MAX_CAS_ATTEMPTS = 5


def ledger_score(initial: float, good: int, bad: int, config: LedgerConfig) -> float:
    """Score of a rule after `good` and `bad` attributed events, clamped to [0, 1]."""
    raw = initial + config.delta_up * good - config.delta_down * bad
    return round(max(0.0, min(1.0, raw)), 6)


class FitnessLedger:
    """Online score updates for adopted rules.

    Each (rule, feedback) pair is attributed at most once. Updates to a rule
    are serialised by a per-rule lock and written with a compare-and-set on
    the row version, so concurrent feedback for one rule never loses an
    event.
    """

    def __init__(self, store: Store, config: LedgerConfig | None = None) -> None:
        self.store = store
        self.config = config or LedgerConfig()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def apply(
        self, rule_id: str, feedback_id: str, rating: Rating
    ) -> InterpretationRule | None:
        """Record one rated event against a rule.

        Returns the updated rule, or None if the event was already attributed
        or the rule no longer exists.
        """
        attribution_id = f"{rule_id}:{feedback_id}"

        async with self._locks[rule_id]:
            if await self.store.get("attributions", attribution_id) is not None:
                logger.debug("Feedback %s already attributed to rule %s", feedback_id, rule_id)
                return None

            for _ in range(_MAX_CAS_ATTEMPTS):
                row = await self.store.get("rules", rule_id)
                if row is None:
                    logger.warning("Rule %s not found, skipping ledger update", rule_id)
                    return None
                rule = InterpretationRule.from_dict(row)

                if rating is Rating.GOOD:
                    rule.good_events += 1
                else:
                    rule.bad_events += 1
                initial = rule.initial_score if rule.initial_score is not None else self.config.initial_score
                new_score = ledger_score(initial, rule.good_events, rule.bad_events, self.config)

                changes = {
                    "good_events": rule.good_events,
                    "bad_events": rule.bad_events,
                    "score": new_score,
                    "version": rule.version + 1,
                    "updated_at": utc_now(),
                }
                disable = (
                    rule.enabled
                    and self.config.disable_below is not None
                    and new_score <= self.config.disable_below + 1e-9
                )
                if disable:
                    changes["enabled"] = False

                if await self.store.compare_and_set(
                    "rules", rule_id, {"version": rule.version}, changes
                ):
                    break
            else:
                raise PersistenceError(f"Rule {rule_id} kept changing under ledger update")

            await self.store.insert(
                "attributions",
                {
                    "id": attribution_id,
                    "rule_id": rule_id,
                    "feedback_id": feedback_id,
                    "rating": rating.value,
                    "created_at": utc_now(),
                },
            )

        logger.info(
            "Rule %s: %s event, score %.2f -> %.2f%s",
            rule_id, rating.value, rule.score, new_score,
            " (disabled)" if disable else "",
        )
        rule.score = new_score
        rule.version += 1
        if disable:
            rule.enabled = False
        return rule

    async def apply_many(
        self, rule_ids: list[str], feedback_id: str, rating: Rating
    ) -> list[InterpretationRule]:
        updated = await asyncio.gather(
            *(self.apply(rule_id, feedback_id, rating) for rule_id in rule_ids)
        )
        return [rule for rule in updated if rule is not None]
