"""Execution-layer result schema.

An `ExecutionResult` reports both phases of a rebalance: proposal creation
and (optionally) execution. A created-but-not-executed proposal is a partial
result, not a failure: `success=True, executed=False` with `proposal_id` set.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    transport = "transport"
    rejected = "rejected"
    validation = "validation"
    # Transaction confirmed but the proposal id could not be read from it.
    missing_event = "missing_event"


class ExecutionResult(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    success: bool
    timestamp: int = Field(..., ge=0, description="Unix milliseconds.")
    strategy_timestamp: Optional[int] = None

    pools: List[str] = Field(default_factory=list)
    ratios: List[int] = Field(default_factory=list)
    reason: str = ""

    proposal_id: Optional[int] = None
    proposal_tx_hash: Optional[str] = None
    proposal_block: Optional[int] = None
    gas_used: Optional[int] = None

    auto_execute: bool = False
    executed: bool = False
    execution_tx_hash: Optional[str] = None
    execution_block: Optional[int] = None

    error: Optional[str] = Field(None, description="Proposal-phase failure.")
    error_kind: Optional[ErrorKind] = None
    execution_error: Optional[str] = Field(None, description="Execution-phase failure (partial result).")

    @property
    def partial(self) -> bool:
        return self.success and self.auto_execute and not self.executed

    @property
    def proposal_unknown(self) -> bool:
        return self.success and self.proposal_id is None


__all__ = ["ErrorKind", "ExecutionResult"]
