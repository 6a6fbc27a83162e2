"""Ledger clients used by the execution layer.

`LedgerClient` is the async surface the coordinator and orchestrator depend
on. Two implementations exist:
  - `SimulatedLedgerClient`: drives an in-process `ProposalLedger`.
  - `Web3LedgerClient` (`liquidai.ledger.web3_client`): the deployed vault.

All failures surface as `TransportError` subclasses. Ledger-side rejections
(authority, allocation, unknown/executed proposal) become
`TransactionRejected` so callers see the same error on either backend.
"""

from __future__ import annotations

import hashlib
from typing import List, Optional, Sequence, Tuple

from liquidai.ledger.schemas import LedgerEvent, RebalanceProposal, TxReceipt
from liquidai.ledger.vault import LedgerError, ProposalLedger


class TransportError(RuntimeError):
    """A submission or read did not complete. `cause` keeps the underlying error."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.cause = cause
        self.tx_hash = tx_hash


class RpcUnavailable(TransportError):
    pass


class ConfirmationTimeout(TransportError):
    pass


class TransactionReverted(TransportError):
    pass


class TransactionRejected(TransportError):
    pass


class LedgerClient:
    """Async ledger surface. Writes wait for confirmation before returning."""

    mode: str = "abstract"

    @property
    def agent_identity(self) -> str:
        raise NotImplementedError

    @property
    def owner_identity(self) -> Optional[str]:
        raise NotImplementedError

    async def propose(self, pools: Sequence[str], ratios: Sequence[int], reason: str) -> TxReceipt:
        raise NotImplementedError

    async def execute(self, proposal_id: int) -> TxReceipt:
        raise NotImplementedError

    async def update_agent_authority(self, new_identity: str) -> TxReceipt:
        raise NotImplementedError

    async def get_proposal(self, proposal_id: int) -> RebalanceProposal:
        raise NotImplementedError

    async def get_proposal_count(self) -> int:
        raise NotImplementedError

    async def get_pool_allocation(self, pool: str) -> int:
        raise NotImplementedError

    async def initial_cursor(self) -> int:
        """Where a fresh event subscription starts."""
        return 0

    async def events_since(self, cursor: int) -> Tuple[List[LedgerEvent], int]:
        raise NotImplementedError

    async def list_proposals(self) -> List[RebalanceProposal]:
        count = await self.get_proposal_count()
        return [await self.get_proposal(i) for i in range(count)]

    async def pending_proposals(self) -> List[RebalanceProposal]:
        return [p for p in await self.list_proposals() if not p.executed]

    async def close(self) -> None:
        return None


class SimulatedLedgerClient(LedgerClient):
    """Signs as two fixed identities against an in-process ledger."""

    mode = "simulated"

    def __init__(self, ledger: ProposalLedger, *, agent_identity: str, owner_identity: Optional[str] = None):
        self.ledger = ledger
        self._agent = agent_identity
        self._owner = owner_identity
        self._nonce = 0
        self._block = 0

    @classmethod
    def create(cls, *, agent_identity: str, owner_identity: str) -> "SimulatedLedgerClient":
        return cls(
            ProposalLedger(owner=owner_identity, agent_authority=agent_identity),
            agent_identity=agent_identity,
            owner_identity=owner_identity,
        )

    @property
    def agent_identity(self) -> str:
        return self._agent

    @property
    def owner_identity(self) -> Optional[str]:
        return self._owner

    def _next_tx(self, sender: str, method: str) -> Tuple[str, int]:
        self._nonce += 1
        self._block += 1
        digest = hashlib.sha256(f"{sender}:{method}:{self._nonce}".encode("utf-8")).hexdigest()
        return "0x" + digest, self._block

    def _transact(self, sender: Optional[str], method: str, fn, *args) -> TxReceipt:
        if not sender:
            raise TransactionRejected(f"{method}: no signing identity configured")
        _, cursor = self.ledger.events_since(0)
        tx_hash, block = self._next_tx(sender, method)
        try:
            fn(sender, *args)
        except LedgerError as e:
            raise TransactionRejected(f"{method} rejected: {e}", cause=e, tx_hash=tx_hash) from e
        new_events, _ = self.ledger.events_since(cursor)
        events = [e.model_copy(update={"tx_hash": tx_hash, "block_number": block}) for e in new_events]
        return TxReceipt(tx_hash=tx_hash, block_number=block, gas_used=21_000, events=events)

    async def propose(self, pools: Sequence[str], ratios: Sequence[int], reason: str) -> TxReceipt:
        return self._transact(self._agent, "proposeRebalance", self.ledger.propose, list(pools), list(ratios), reason)

    async def execute(self, proposal_id: int) -> TxReceipt:
        return self._transact(self._owner, "executeRebalance", self.ledger.execute, proposal_id)

    async def update_agent_authority(self, new_identity: str) -> TxReceipt:
        return self._transact(self._owner, "updateAgentAuthority", self.ledger.update_agent_authority, new_identity)

    async def get_proposal(self, proposal_id: int) -> RebalanceProposal:
        try:
            return self.ledger.get_proposal(proposal_id)
        except LedgerError as e:
            raise TransactionRejected(str(e), cause=e) from e

    async def get_proposal_count(self) -> int:
        return self.ledger.get_proposal_count()

    async def get_pool_allocation(self, pool: str) -> int:
        return self.ledger.get_pool_allocation(pool)

    async def list_proposals(self) -> List[RebalanceProposal]:
        return self.ledger.proposals()

    async def pending_proposals(self) -> List[RebalanceProposal]:
        return self.ledger.pending_proposals()

    async def events_since(self, cursor: int) -> Tuple[List[LedgerEvent], int]:
        return self.ledger.events_since(cursor)


__all__ = [
    "ConfirmationTimeout",
    "LedgerClient",
    "RpcUnavailable",
    "SimulatedLedgerClient",
    "TransactionRejected",
    "TransactionReverted",
    "TransportError",
]
