"""Allocation reasoner: `MarketSnapshot -> AllocationStrategy`.

Pure over its input and the static rule table. Never raises: an empty pool
set or any internal inconsistency yields the no-op fallback strategy
(confidence 0, no pools, a single `maintain_current` rule).

Normalization policy: basis points are scaled to the 10,000 total, floored,
and the leftover units go to the largest fractional remainders (ties by pool
order), so every non-empty strategy sums to exactly 10,000.
"""

from __future__ import annotations

import math
from typing import Callable, List, Optional, Sequence, Tuple

from ..data.models import MarketSnapshot
from ..data.mongo import now_ms
from .rules import FALLBACK_RULE, RULE_TABLE, Rule, evaluate_rules, pool_multiplier, pool_rationale
from .schemas import TOTAL_BPS, AllocationStrategy, PoolAllocation, Priority, TriggeredRule


BASE_CONFIDENCE = 0.5
CONFIDENCE_PER_RULE = 0.1
DATA_PRESENCE_BONUS = 0.2


def compute_confidence(n_triggered: int, has_pools: bool) -> float:
    """Monotonic, saturating confidence in [0, 1]."""
    value = BASE_CONFIDENCE + CONFIDENCE_PER_RULE * max(0, n_triggered)
    if has_pools:
        value += DATA_PRESENCE_BONUS
    return min(1.0, round(value, 10))


def normalize_bps(weights: Sequence[float], total: int = TOTAL_BPS) -> List[int]:
    """Scale weights to integers summing exactly to `total` (largest remainder)."""
    if not weights:
        return []
    s = math.fsum(weights)
    if not math.isfinite(s) or s <= 0 or any((not math.isfinite(w)) or w < 0 for w in weights):
        raise ValueError("weights must be finite, non-negative and not all zero")

    scaled = [w * total / s for w in weights]
    floors = [int(math.floor(x)) for x in scaled]
    leftover = total - sum(floors)
    order = sorted(range(len(scaled)), key=lambda i: (-(scaled[i] - floors[i]), i))
    for i in order[:leftover]:
        floors[i] += 1
    return floors


class AllocationReasoner:
    """Applies the rule table and produces a normalized allocation vector."""

    def __init__(
        self,
        *,
        rules: Tuple[Rule, ...] = RULE_TABLE,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.rules = rules
        self.clock = clock or now_ms

    def fallback(self, snapshot: Optional[MarketSnapshot] = None) -> AllocationStrategy:
        trigger = TriggeredRule(
            name=FALLBACK_RULE.name,
            action=FALLBACK_RULE.action,
            priority=Priority.low,
            description=FALLBACK_RULE.description,
        )
        return AllocationStrategy(
            timestamp=self.clock(),
            pools=[],
            confidence=0.0,
            triggered_rules=[trigger],
            snapshot_timestamp=snapshot.timestamp if snapshot is not None else None,
            fallback=True,
        )

    def reason(self, snapshot: MarketSnapshot) -> AllocationStrategy:
        if not snapshot.is_actionable:
            return self.fallback(snapshot)
        try:
            return self._reason(snapshot)
        except Exception:  # pylint: disable=broad-exception-caught
            return self.fallback(snapshot)

    def _reason(self, snapshot: MarketSnapshot) -> AllocationStrategy:
        fired = evaluate_rules(snapshot, self.rules)
        confidence = compute_confidence(len(fired), bool(snapshot.pools))

        addresses = list(snapshot.pools.keys())
        base = TOTAL_BPS / len(addresses)
        weights = [base * pool_multiplier(snapshot.pools[a], fired) for a in addresses]
        bps = normalize_bps(weights)

        allocations = [
            PoolAllocation(
                pool_address=addr,
                allocation_bps=units,
                rationale=pool_rationale(snapshot.pools[addr]),
            )
            for addr, units in zip(addresses, bps)
        ]
        return AllocationStrategy(
            timestamp=self.clock(),
            pools=allocations,
            confidence=confidence,
            triggered_rules=[r.trigger(snapshot) for r in fired],
            snapshot_timestamp=snapshot.timestamp,
        )


__all__ = ["AllocationReasoner", "compute_confidence", "normalize_bps"]
