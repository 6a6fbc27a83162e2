"""Execution coordinator: gate, submit and optionally execute a strategy.

Phase order:
- validate the strategy (fail-fast, nothing submitted on error);
- propose under the agent identity and wait for confirmation;
- with auto-execute, execute the new proposal under the owner identity.

No automatic retry: resubmitting a financial transaction blindly risks a
double proposal, so retry policy belongs to the caller.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

from web3 import Web3

from liquidai.config import ExecutionConfig
from liquidai.data.audit import AuditContext, AuditManager
from liquidai.data.mongo import now_ms
from liquidai.data.store import HistoryStore
from liquidai.execution.schemas import ErrorKind, ExecutionResult
from liquidai.ledger.client import LedgerClient, TransactionRejected, TransportError
from liquidai.ledger.schemas import LedgerEventType
from liquidai.reasoning.schemas import TOTAL_BPS, AllocationStrategy, RuleAction


class StrategyValidationError(ValueError):
    pass


class EmptyStrategy(StrategyValidationError):
    pass


class InvalidAllocationSum(StrategyValidationError):
    pass


class InvalidPoolAddress(StrategyValidationError):
    pass


REASON_PHRASES: Dict[RuleAction, str] = {
    RuleAction.reduce_risk: "Risk reduction due to high volatility",
    RuleAction.optimize_yield: "Yield optimization for better returns",
    RuleAction.diversify: "Portfolio diversification",
    RuleAction.increase_allocation: "Increased allocation to high-volume pools",
}
DEFAULT_REASON = "Automated rebalancing based on market conditions"


def build_reason(strategy: AllocationStrategy) -> str:
    phrases = [REASON_PHRASES[a] for a in strategy.actions if a in REASON_PHRASES]
    return "; ".join(phrases) if phrases else DEFAULT_REASON


def validate_strategy(strategy: AllocationStrategy) -> None:
    if not strategy.pools:
        raise EmptyStrategy("Invalid strategy: no pools specified")
    total = strategy.total_bps
    if total != TOTAL_BPS:
        raise InvalidAllocationSum(f"Invalid strategy: total allocation is {total}, expected {TOTAL_BPS}")
    for p in strategy.pools:
        if not Web3.is_address(p.pool_address):
            raise InvalidPoolAddress(f"Invalid pool address: {p.pool_address}")


def _error_kind(e: TransportError) -> ErrorKind:
    return ErrorKind.rejected if isinstance(e, TransactionRejected) else ErrorKind.transport


class ExecutionCoordinator:
    def __init__(
        self,
        client: LedgerClient,
        *,
        config: Optional[ExecutionConfig] = None,
        audit: Optional[AuditManager] = None,
        history: Optional[HistoryStore] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.client = client
        self.config = config if config is not None else ExecutionConfig()
        self.audit = audit
        self.history = history if history is not None else HistoryStore()
        self.clock = clock or now_ms

    @property
    def auto_execute(self) -> bool:
        return bool(self.config.auto_execute)

    async def _audit(self, event_type: str, payload: Dict, ctx: AuditContext, level: str = "info") -> None:
        if self.audit is not None:
            await self.audit.log(event_type, payload, ctx=ctx, level=level)

    async def execute(self, strategy: AllocationStrategy, *, cycle_id: Optional[str] = None) -> ExecutionResult:
        ctx = AuditContext(cycle_id=cycle_id, component="execution_coordinator")
        try:
            validate_strategy(strategy)
        except StrategyValidationError as e:
            await self._audit(
                "proposal_failed",
                {"error": str(e), "error_kind": ErrorKind.validation.value},
                ctx,
                level="warning",
            )
            raise

        pools = [p.pool_address for p in strategy.pools]
        ratios = [p.allocation_bps for p in strategy.pools]
        reason = build_reason(strategy)
        base = {
            "timestamp": self.clock(),
            "strategy_timestamp": strategy.timestamp,
            "pools": pools,
            "ratios": ratios,
            "reason": reason,
            "auto_execute": self.auto_execute,
        }

        await self._audit("proposal_submitted", {"pools": pools, "ratios": ratios, "reason": reason}, ctx)
        try:
            receipt = await self.client.propose(pools, ratios, reason)
        except TransportError as e:
            kind = _error_kind(e)
            result = ExecutionResult(
                success=False,
                error=str(e),
                error_kind=kind,
                proposal_tx_hash=e.tx_hash,
                **base,
            )
            await self._audit(
                "proposal_failed",
                {"error": str(e), "error_kind": kind.value, "tx_hash": e.tx_hash},
                ctx,
                level="error",
            )
            await self.history.add_execution(result)
            return result

        created = receipt.first_event(LedgerEventType.rebalance_proposed)
        proposal_id = created.proposal_id if created is not None else None
        await self._audit(
            "proposal_confirmed",
            {
                "proposal_id": proposal_id,
                "tx_hash": receipt.tx_hash,
                "block_number": receipt.block_number,
                "gas_used": receipt.gas_used,
            },
            ctx,
        )

        fields = dict(
            base,
            success=True,
            proposal_id=proposal_id,
            proposal_tx_hash=receipt.tx_hash,
            proposal_block=receipt.block_number,
            gas_used=receipt.gas_used,
        )
        if proposal_id is None:
            msg = f"RebalanceProposed event missing from receipt {receipt.tx_hash}; proposal id unknown"
            fields.update(error=msg, error_kind=ErrorKind.missing_event)
            await self._audit(
                "proposal_id_missing",
                {"tx_hash": receipt.tx_hash, "block_number": receipt.block_number},
                ctx,
                level="error",
            )
        if self.auto_execute:
            fields.update(await self._execute_phase(proposal_id, ctx))

        result = ExecutionResult(**fields)
        await self.history.add_execution(result)
        return result

    async def _execute_phase(self, proposal_id: Optional[int], ctx: AuditContext) -> Dict:
        if proposal_id is None:
            msg = "RebalanceProposed event missing from receipt; cannot execute"
            await self._audit("proposal_execution_failed", {"error": msg}, ctx, level="error")
            return {"executed": False, "execution_error": msg}
        try:
            receipt = await self.client.execute(proposal_id)
        except TransportError as e:
            await self._audit(
                "proposal_execution_failed",
                {"proposal_id": proposal_id, "error": str(e), "error_kind": _error_kind(e).value},
                ctx,
                level="error",
            )
            return {"executed": False, "execution_error": str(e), "execution_tx_hash": e.tx_hash}
        await self._audit(
            "proposal_executed",
            {"proposal_id": proposal_id, "tx_hash": receipt.tx_hash, "block_number": receipt.block_number},
            ctx,
        )
        return {
            "executed": True,
            "execution_tx_hash": receipt.tx_hash,
            "execution_block": receipt.block_number,
        }

    async def execute_proposal(self, proposal_id: int, *, cycle_id: Optional[str] = None) -> Dict:
        """Out-of-band execution of an existing proposal (owner identity)."""
        ctx = AuditContext(cycle_id=cycle_id, component="execution_coordinator")
        return await self._execute_phase(int(proposal_id), ctx)

    async def rebuild_history(self) -> int:
        """Replace execution history with the ledger's proposal records."""
        proposals = await self.client.list_proposals()
        results: List[ExecutionResult] = [
            ExecutionResult(
                success=True,
                timestamp=p.created_at,
                pools=list(p.pools),
                ratios=list(p.ratios),
                reason=p.reason,
                proposal_id=p.proposal_id,
                executed=p.executed,
            )
            for p in proposals
        ]
        self.history.replace_executions(results)
        return len(results)

    def recent(self, limit: int = 10) -> List[ExecutionResult]:
        return self.history.executions(limit)


__all__ = [
    "DEFAULT_REASON",
    "EmptyStrategy",
    "ExecutionCoordinator",
    "InvalidAllocationSum",
    "InvalidPoolAddress",
    "REASON_PHRASES",
    "StrategyValidationError",
    "build_reason",
    "validate_strategy",
]
