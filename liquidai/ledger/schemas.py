"""Ledger-side records: proposals, emitted events and transaction receipts.

These mirror what the on-chain vault stores and emits so the in-process
ledger and the web3 client hand the same types to the coordinator.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


ZERO_ADDRESS = "0x" + "0" * 40


class ProposalState(str, Enum):
    created = "created"
    executed = "executed"


class RebalanceProposal(BaseModel):
    """One proposal record. Transitions only `created -> executed`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    proposal_id: int = Field(..., ge=0)
    pools: List[str] = Field(default_factory=list)
    ratios: List[int] = Field(default_factory=list)
    reason: str = ""
    created_at: int = Field(..., ge=0, description="Unix milliseconds (block time on chain).")
    proposer: Optional[str] = None
    executed: bool = False
    executed_at: Optional[int] = None
    executor: Optional[str] = None

    @model_validator(mode="after")
    def _lengths_match(self) -> "RebalanceProposal":
        if len(self.pools) != len(self.ratios):
            raise ValueError("pools and ratios must have the same length")
        return self

    @property
    def state(self) -> ProposalState:
        return ProposalState.executed if self.executed else ProposalState.created

    def allocation(self) -> dict:
        return dict(zip(self.pools, self.ratios))


class LedgerEventType(str, Enum):
    rebalance_proposed = "RebalanceProposed"
    rebalance_executed = "RebalanceExecuted"
    agent_authority_updated = "AgentAuthorityUpdated"


class LedgerEvent(BaseModel):
    """Typed ledger event.

    `cursor` is the event's resume position within one ledger: the event
    index for the in-process ledger, `block * LOG_INDEX_SPAN + log_index`
    for a chain. `events_since(c)` returns only events with `cursor >= c`.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    event_type: LedgerEventType
    cursor: int = Field(..., ge=0)
    proposal_id: Optional[int] = None
    pools: List[str] = Field(default_factory=list)
    ratios: List[int] = Field(default_factory=list)
    reason: Optional[str] = None
    old_authority: Optional[str] = None
    new_authority: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


class TxReceipt(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    tx_hash: str
    block_number: int = Field(0, ge=0)
    gas_used: int = Field(0, ge=0)
    status: int = 1
    events: List[LedgerEvent] = Field(default_factory=list)

    def first_event(self, event_type: LedgerEventType) -> Optional[LedgerEvent]:
        return next((e for e in self.events if e.event_type == event_type), None)


__all__ = [
    "LedgerEvent",
    "LedgerEventType",
    "ProposalState",
    "RebalanceProposal",
    "TxReceipt",
    "ZERO_ADDRESS",
]
