"""Rule-based allocation reasoning (deterministic, no learned model)."""

from .reasoner import AllocationReasoner, compute_confidence, normalize_bps  # noqa: F401
from .schemas import (  # noqa: F401
    TOTAL_BPS,
    AllocationStrategy,
    PoolAllocation,
    Priority,
    RuleAction,
    TriggeredRule,
    export_json_schema,
)
