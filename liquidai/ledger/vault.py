"""In-process proposal ledger.

Behaves like the on-chain liquidity vault: the agent authority proposes, the
owner executes, and an executed proposal is terminal. Used for simulation
mode and tests; `Web3LedgerClient` talks to the deployed contract instead.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence, Tuple

from liquidai.data.mongo import now_ms
from liquidai.ledger.schemas import (
    ZERO_ADDRESS,
    LedgerEvent,
    LedgerEventType,
    RebalanceProposal,
)
from liquidai.reasoning.schemas import TOTAL_BPS


class LedgerError(RuntimeError):
    pass


class UnauthorizedCaller(LedgerError):
    pass


class InvalidAllocation(LedgerError):
    pass


class LengthMismatch(InvalidAllocation):
    pass


class UnknownProposal(LedgerError):
    pass


class AlreadyExecuted(LedgerError):
    pass


class InvalidAuthority(LedgerError):
    pass


def _norm(identity: Optional[str]) -> str:
    return (identity or "").strip().lower()


def _is_zero(identity: Optional[str]) -> bool:
    v = _norm(identity)
    return v == "" or v == ZERO_ADDRESS


class ProposalLedger:
    """Proposal store plus the pool allocation table it governs."""

    def __init__(
        self,
        owner: str,
        agent_authority: Optional[str] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
    ):
        if _is_zero(owner):
            raise InvalidAuthority("LiquidityVault: Invalid owner address")
        # The deployer may initially hold both roles.
        agent = agent_authority if agent_authority is not None else owner
        if _is_zero(agent):
            raise InvalidAuthority("LiquidityVault: Invalid authority address")
        self.owner = owner
        self.agent_authority = agent
        self.clock = clock or now_ms
        self._proposals: List[RebalanceProposal] = []
        self._allocations: Dict[str, int] = {}
        self._events: List[LedgerEvent] = []

    # -----------------
    # Mutations
    # -----------------

    def propose(self, sender: str, pools: Sequence[str], ratios: Sequence[int], reason: str) -> int:
        if _norm(sender) != _norm(self.agent_authority):
            raise UnauthorizedCaller("LiquidityVault: Not authorized agent")
        if len(pools) != len(ratios):
            raise LengthMismatch(
                f"LiquidityVault: pools/ratios length mismatch ({len(pools)} != {len(ratios)})"
            )
        # Basis points are whole units; no truncation of fractional values.
        if any(isinstance(r, bool) or not isinstance(r, int) for r in ratios):
            raise InvalidAllocation(f"LiquidityVault: Ratios must be integer basis points (got {list(ratios)})")
        ratios = list(ratios)
        if any(r < 0 for r in ratios) or sum(ratios) != TOTAL_BPS:
            raise InvalidAllocation(
                f"LiquidityVault: Invalid total allocation (got {sum(ratios)}, expected {TOTAL_BPS})"
            )

        proposal_id = len(self._proposals)
        proposal = RebalanceProposal(
            proposal_id=proposal_id,
            pools=list(pools),
            ratios=ratios,
            reason=reason,
            created_at=self.clock(),
            proposer=sender,
        )
        self._proposals.append(proposal)
        self._emit(
            LedgerEventType.rebalance_proposed,
            proposal_id=proposal_id,
            pools=proposal.pools,
            ratios=proposal.ratios,
            reason=reason,
        )
        return proposal_id

    def execute(self, sender: str, proposal_id: int) -> RebalanceProposal:
        self._only_owner(sender)
        proposal = self._get(proposal_id)
        if proposal.executed:
            raise AlreadyExecuted("LiquidityVault: Proposal already executed")

        # Wholesale replacement, not a merge.
        self._allocations = proposal.allocation()
        done = proposal.model_copy(
            update={"executed": True, "executed_at": self.clock(), "executor": sender}
        )
        self._proposals[proposal_id] = done
        self._emit(
            LedgerEventType.rebalance_executed,
            proposal_id=proposal_id,
            pools=done.pools,
            ratios=done.ratios,
        )
        return done

    def update_agent_authority(self, sender: str, new_identity: str) -> None:
        self._only_owner(sender)
        if _is_zero(new_identity):
            raise InvalidAuthority("LiquidityVault: Invalid authority address")
        old = self.agent_authority
        self.agent_authority = new_identity
        self._emit(
            LedgerEventType.agent_authority_updated,
            old_authority=old,
            new_authority=new_identity,
        )

    # -----------------
    # Reads
    # -----------------

    def get_proposal(self, proposal_id: int) -> RebalanceProposal:
        return self._get(proposal_id)

    def get_proposal_count(self) -> int:
        return len(self._proposals)

    def get_pool_allocation(self, pool: str) -> int:
        return int(self._allocations.get(pool, 0))

    def proposals(self) -> List[RebalanceProposal]:
        return list(self._proposals)

    def pending_proposals(self) -> List[RebalanceProposal]:
        return [p for p in self._proposals if not p.executed]

    def events_since(self, cursor: int = 0) -> Tuple[List[LedgerEvent], int]:
        """Events with index >= cursor, plus the cursor to resume from."""
        start = max(0, int(cursor))
        return list(self._events[start:]), len(self._events)

    # -----------------
    # Internals
    # -----------------

    def _only_owner(self, sender: str) -> None:
        if _norm(sender) != _norm(self.owner):
            raise UnauthorizedCaller("LiquidityVault: caller is not the owner")

    def _get(self, proposal_id: int) -> RebalanceProposal:
        if not isinstance(proposal_id, int) or proposal_id < 0 or proposal_id >= len(self._proposals):
            raise UnknownProposal(f"LiquidityVault: Invalid proposal ID {proposal_id}")
        return self._proposals[proposal_id]

    def _emit(self, event_type: LedgerEventType, **fields) -> LedgerEvent:
        event = LedgerEvent(event_type=event_type, cursor=len(self._events), **fields)
        self._events.append(event)
        return event

    @property
    def events(self) -> List[LedgerEvent]:
        return list(self._events)


__all__ = [
    "AlreadyExecuted",
    "InvalidAllocation",
    "InvalidAuthority",
    "LedgerError",
    "LengthMismatch",
    "ProposalLedger",
    "UnauthorizedCaller",
    "UnknownProposal",
]
