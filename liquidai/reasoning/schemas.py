"""Pydantic contracts for the reasoning engine.

Reasoning output must be deterministic and strictly JSON-serializable so it
can be audited, persisted and served to the dashboard as-is.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field


TOTAL_BPS = 10_000


class RuleAction(str, Enum):
    reduce_risk = "reduce_risk"
    optimize_yield = "optimize_yield"
    diversify = "diversify"
    increase_allocation = "increase_allocation"
    maintain_current = "maintain_current"


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class TriggeredRule(BaseModel):
    """Serializable reference to a rule that fired for one snapshot."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1, description="Stable rule identifier.")
    action: RuleAction
    priority: Priority
    description: str = ""


class PoolAllocation(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    pool_address: str = Field(..., min_length=1)
    allocation_bps: int = Field(..., ge=0)
    rationale: str = ""


class AllocationStrategy(BaseModel):
    """Output of one reasoning pass.

    The reasoner guarantees `sum(allocation_bps) == TOTAL_BPS` for non-empty
    strategies. The model itself does not enforce it: strategies can arrive
    from other producers, and the coordinator is the gate that rejects them.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    timestamp: int = Field(..., ge=0, description="Unix milliseconds.")
    pools: List[PoolAllocation] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)
    triggered_rules: List[TriggeredRule] = Field(default_factory=list)
    snapshot_timestamp: Optional[int] = None
    fallback: bool = Field(False, description="True when produced by the no-op fallback path.")

    @property
    def total_bps(self) -> int:
        return sum(p.allocation_bps for p in self.pools)

    @property
    def actions(self) -> List[RuleAction]:
        return [r.action for r in self.triggered_rules]

    def ratios(self) -> Dict[str, int]:
        return {p.pool_address: p.allocation_bps for p in self.pools}


T = TypeVar("T", bound=BaseModel)


def export_json_schema(model: Type[T]) -> Dict[str, Any]:
    """Export JSON schema (dashboard typing)."""
    return model.model_json_schema()


__all__ = [
    "AllocationStrategy",
    "PoolAllocation",
    "Priority",
    "RuleAction",
    "TOTAL_BPS",
    "TriggeredRule",
    "export_json_schema",
]
