"""Deterministic allocation rule table.

Design:
- Rules are pure and deterministic (no DB/network).
- Conditions are closures over structured snapshot fields.
- Rules fire independently; priority is informational and never gates firing.
- Per-pool multipliers compose multiplicatively in rule-table order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from ..data.models import MarketSnapshot, PoolMetrics
from .schemas import Priority, RuleAction, TriggeredRule


VOLATILITY_THRESHOLD = 0.6
SEVERE_VOLATILITY = 0.8
APR_FLOOR = 0.03
SEVERE_LOW_APR = 0.02
CONCENTRATION_THRESHOLD = 0.7
VOLUME_THRESHOLD = 100_000.0

# Per-pool adjustment thresholds.
STABLE_POOL_APR = 0.02
HIGH_YIELD_APR = 0.05
LOW_YIELD_APR = 0.02
HIGH_VOLUME_POOL = 100_000.0
LARGE_TVL_POOL = 1_000_000.0

Condition = Callable[[MarketSnapshot], bool]
PriorityRule = Callable[[MarketSnapshot], Priority]
Adjustment = Callable[[PoolMetrics], float]


@dataclass(frozen=True)
class Rule:
    name: str
    action: RuleAction
    condition: Condition
    priority_rule: PriorityRule
    description: str = ""

    def fires(self, snapshot: MarketSnapshot) -> bool:
        return bool(self.condition(snapshot))

    def trigger(self, snapshot: MarketSnapshot) -> TriggeredRule:
        return TriggeredRule(
            name=self.name,
            action=self.action,
            priority=self.priority_rule(snapshot),
            description=self.description,
        )


def _reduce_risk_priority(s: MarketSnapshot) -> Priority:
    return Priority.high if s.market_volatility > SEVERE_VOLATILITY else Priority.medium


def _optimize_yield_priority(s: MarketSnapshot) -> Priority:
    return Priority.high if s.average_apr < SEVERE_LOW_APR else Priority.medium


RULE_TABLE: Tuple[Rule, ...] = (
    Rule(
        name="high_volatility",
        action=RuleAction.reduce_risk,
        condition=lambda s: s.market_volatility > VOLATILITY_THRESHOLD,
        priority_rule=_reduce_risk_priority,
        description="Volatility above threshold: shift weight from volatile to stable pools.",
    ),
    Rule(
        name="low_yield",
        action=RuleAction.optimize_yield,
        condition=lambda s: bool(s.pools) and s.min_fee_apr < APR_FLOOR,
        priority_rule=_optimize_yield_priority,
        description="A pool yields below the APR floor: reallocate toward higher-yield pools.",
    ),
    Rule(
        name="tvl_concentration",
        action=RuleAction.diversify,
        condition=lambda s: s.max_tvl_share > CONCENTRATION_THRESHOLD,
        priority_rule=lambda s: Priority.medium,
        description="One pool holds most of the TVL: diversify across pools.",
    ),
    Rule(
        name="high_volume",
        action=RuleAction.increase_allocation,
        condition=lambda s: s.total_volume_24h > VOLUME_THRESHOLD,
        priority_rule=lambda s: Priority.low,
        description="Aggregate 24h volume above threshold: favour high-volume pools.",
    ),
)

FALLBACK_RULE = Rule(
    name="insufficient_data",
    action=RuleAction.maintain_current,
    condition=lambda s: True,
    priority_rule=lambda s: Priority.low,
    description="Maintain current allocation due to insufficient data.",
)


def _reduce_risk(pool: PoolMetrics) -> float:
    # Low APR is read as the more stable pool.
    return 1.2 if pool.fee_apr < STABLE_POOL_APR else 0.8


def _optimize_yield(pool: PoolMetrics) -> float:
    if pool.fee_apr > HIGH_YIELD_APR:
        return 1.3
    if pool.fee_apr < LOW_YIELD_APR:
        return 0.5
    return 1.0


def _increase_allocation(pool: PoolMetrics) -> float:
    return 1.1 if pool.volume_24h > HIGH_VOLUME_POOL else 1.0


POOL_ADJUSTMENTS: Dict[RuleAction, Adjustment] = {
    RuleAction.reduce_risk: _reduce_risk,
    RuleAction.optimize_yield: _optimize_yield,
    RuleAction.increase_allocation: _increase_allocation,
}


def evaluate_rules(snapshot: MarketSnapshot, rules: Tuple[Rule, ...] = RULE_TABLE) -> List[Rule]:
    """All rules whose condition holds, in table order."""
    return [r for r in rules if r.fires(snapshot)]


def pool_multiplier(pool: PoolMetrics, fired: List[Rule]) -> float:
    mult = 1.0
    for rule in fired:
        adjust = POOL_ADJUSTMENTS.get(rule.action)
        if adjust is not None:
            mult *= adjust(pool)
    return mult


def pool_rationale(pool: PoolMetrics) -> str:
    reasons: List[str] = []
    if pool.fee_apr > HIGH_YIELD_APR:
        reasons.append("High APR")
    if pool.volume_24h > HIGH_VOLUME_POOL:
        reasons.append("High volume")
    if pool.tvl_usd > LARGE_TVL_POOL:
        reasons.append("Large TVL")
    return ", ".join(reasons) or "Balanced allocation"


__all__ = [
    "FALLBACK_RULE",
    "POOL_ADJUSTMENTS",
    "RULE_TABLE",
    "Rule",
    "evaluate_rules",
    "pool_multiplier",
    "pool_rationale",
]
