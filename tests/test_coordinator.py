import asyncio

import pytest

from liquidai.config import ExecutionConfig
from liquidai.data.audit import AuditManager
from liquidai.data.store import HistoryStore
from liquidai.execution.coordinator import (
    DEFAULT_REASON,
    EmptyStrategy,
    ExecutionCoordinator,
    InvalidAllocationSum,
    InvalidPoolAddress,
    build_reason,
)
from liquidai.ledger.client import ConfirmationTimeout, SimulatedLedgerClient
from liquidai.ledger.vault import ProposalLedger
from liquidai.reasoning.schemas import AllocationStrategy, PoolAllocation, Priority, RuleAction, TriggeredRule

OWNER = "0x" + "2" * 40
AGENT = "0x" + "1" * 40
POOL_A = "0x1234567890123456789012345678901234567890"
POOL_B = "0x2345678901234567890123456789012345678901"


def run_async(coro):
    return asyncio.run(coro)


def _strategy(allocs, actions=(RuleAction.reduce_risk,), confidence=0.9):
    return AllocationStrategy(
        timestamp=1_000,
        pools=[PoolAllocation(pool_address=a, allocation_bps=b) for a, b in allocs],
        confidence=confidence,
        triggered_rules=[
            TriggeredRule(name=a.value, action=a, priority=Priority.medium) for a in actions
        ],
    )


def _coordinator(client=None, *, auto_execute=False):
    client = client if client is not None else SimulatedLedgerClient.create(agent_identity=AGENT, owner_identity=OWNER)
    return ExecutionCoordinator(
        client,
        config=ExecutionConfig(auto_execute=auto_execute),
        audit=AuditManager(),
        history=HistoryStore(limit=10),
    )


class _TimeoutClient(SimulatedLedgerClient):
    async def propose(self, pools, ratios, reason):
        raise ConfirmationTimeout("proposeRebalance not confirmed within 1.0s", tx_hash="0xabc")



class _NoEventClient(SimulatedLedgerClient):
    async def propose(self, pools, ratios, reason):
        receipt = await super().propose(pools, ratios, reason)
        return receipt.model_copy(update={"events": []})

# --- Reason text ---

def test_reason_phrases_follow_triggered_rules():
    s = _strategy([(POOL_A, 10_000)], actions=(RuleAction.reduce_risk, RuleAction.optimize_yield))
    assert build_reason(s) == "Risk reduction due to high volatility; Yield optimization for better returns"
    assert build_reason(_strategy([(POOL_A, 10_000)], actions=())) == DEFAULT_REASON
    assert build_reason(_strategy([(POOL_A, 10_000)], actions=(RuleAction.maintain_current,))) == DEFAULT_REASON


# --- Validation ---

def test_rejects_invalid_strategies_without_submitting():
    async def _test():
        coord = _coordinator()
        ledger = coord.client.ledger
        with pytest.raises(EmptyStrategy):
            await coord.execute(_strategy([]))
        with pytest.raises(InvalidAllocationSum):
            await coord.execute(_strategy([(POOL_A, 5000), (POOL_B, 4999)]))
        with pytest.raises(InvalidPoolAddress):
            await coord.execute(_strategy([(POOL_A, 5000), ("0xnot-an-address", 5000)]))
        assert ledger.get_proposal_count() == 0
        assert coord.history.executions() == []
        assert coord.audit.count("proposal_submitted") == 0
        assert coord.audit.count("proposal_failed") == 3

    run_async(_test())


# --- Submission ---

def test_propose_only_leaves_proposal_pending():
    async def _test():
        coord = _coordinator()
        result = await coord.execute(_strategy([(POOL_A, 6000), (POOL_B, 4000)]))
        assert result.success is True
        assert result.proposal_id == 0
        assert result.proposal_tx_hash is not None
        assert result.executed is False
        assert result.reason == "Risk reduction due to high volatility"
        assert coord.client.ledger.get_pool_allocation(POOL_A) == 0
        assert coord.history.executions(1)[0] == result
        assert coord.audit.count("proposal_confirmed") == 1

    run_async(_test())


def test_auto_execute_runs_both_phases():
    async def _test():
        coord = _coordinator(auto_execute=True)
        result = await coord.execute(_strategy([(POOL_A, 6000), (POOL_B, 4000)]))
        assert result.success and result.executed
        assert result.execution_tx_hash is not None
        assert result.execution_tx_hash != result.proposal_tx_hash
        assert coord.client.ledger.get_pool_allocation(POOL_A) == 6000
        assert coord.client.ledger.get_pool_allocation(POOL_B) == 4000
        assert coord.audit.count("proposal_executed") == 1

    run_async(_test())


def test_execution_failure_is_partial_result():
    async def _test():
        client = SimulatedLedgerClient(ProposalLedger(owner=OWNER, agent_authority=AGENT), agent_identity=AGENT)
        coord = _coordinator(client, auto_execute=True)
        result = await coord.execute(_strategy([(POOL_A, 6000), (POOL_B, 4000)]))
        assert result.success is True
        assert result.executed is False
        assert result.partial is True
        assert result.proposal_id == 0
        assert result.execution_error
        assert coord.audit.count("proposal_execution_failed") == 1

        # Still executable out-of-band by the owner.
        client.ledger.execute(OWNER, result.proposal_id)
        assert client.ledger.get_pool_allocation(POOL_A) == 6000

    run_async(_test())


def test_execute_proposal_completes_partial_result():
    async def _test():
        ledger = ProposalLedger(owner=OWNER, agent_authority=AGENT)
        agent_only = _coordinator(SimulatedLedgerClient(ledger, agent_identity=AGENT), auto_execute=True)
        result = await agent_only.execute(_strategy([(POOL_A, 6000), (POOL_B, 4000)]))
        assert result.partial is True
        assert ledger.get_pool_allocation(POOL_A) == 0

        owner = _coordinator(SimulatedLedgerClient(ledger, agent_identity=AGENT, owner_identity=OWNER))
        out = await owner.execute_proposal(result.proposal_id, cycle_id="manual")
        assert out["executed"] is True
        assert out["execution_tx_hash"].startswith("0x")
        assert ledger.get_proposal(result.proposal_id).executed is True
        assert ledger.get_pool_allocation(POOL_A) == 6000
        assert ledger.get_pool_allocation(POOL_B) == 4000
        assert owner.audit.count("proposal_executed") == 1

        again = await owner.execute_proposal(result.proposal_id)
        assert again["executed"] is False
        assert "already executed" in again["execution_error"]

    run_async(_test())


def test_receipt_without_proposed_event_is_flagged():
    async def _test():
        client = _NoEventClient.create(agent_identity=AGENT, owner_identity=OWNER)
        coord = _coordinator(client, auto_execute=True)
        result = await coord.execute(_strategy([(POOL_A, 6000), (POOL_B, 4000)]))
        assert result.success is True
        assert result.proposal_id is None
        assert result.proposal_unknown is True
        assert result.error_kind == "missing_event"
        assert "RebalanceProposed" in result.error
        assert result.proposal_tx_hash.startswith("0x")
        assert result.executed is False
        assert client.ledger.get_proposal_count() == 1
        assert client.ledger.get_pool_allocation(POOL_A) == 0
        assert coord.audit.count("proposal_id_missing") == 1
        assert coord.history.executions(1)[0].proposal_unknown is True

    run_async(_test())


def test_transport_failure_reported_without_retry():
    async def _test():
        client = _TimeoutClient(ProposalLedger(owner=OWNER, agent_authority=AGENT), agent_identity=AGENT)
        coord = _coordinator(client)
        result = await coord.execute(_strategy([(POOL_A, 10_000)]))
        assert result.success is False
        assert result.error_kind == "transport"
        assert "not confirmed" in result.error
        assert result.proposal_tx_hash == "0xabc"
        assert client.ledger.get_proposal_count() == 0
        assert coord.audit.count("proposal_submitted") == 1
        assert coord.history.executions() == [result]

    run_async(_test())


def test_rejected_proposal_is_typed():
    async def _test():
        ledger = ProposalLedger(owner=OWNER, agent_authority=OWNER)
        coord = _coordinator(SimulatedLedgerClient(ledger, agent_identity=AGENT, owner_identity=OWNER))
        result = await coord.execute(_strategy([(POOL_A, 10_000)]))
        assert result.success is False
        assert result.error_kind == "rejected"
        assert "Not authorized agent" in result.error

    run_async(_test())


def test_rebuild_history_from_ledger():
    async def _test():
        client = SimulatedLedgerClient.create(agent_identity=AGENT, owner_identity=OWNER)
        client.ledger.propose(AGENT, [POOL_A], [10_000], "earlier run")
        client.ledger.propose(AGENT, [POOL_A, POOL_B], [5000, 5000], "earlier run 2")
        client.ledger.execute(OWNER, 0)

        coord = _coordinator(client)
        assert await coord.rebuild_history() == 2
        newest, oldest = coord.history.executions()
        assert newest.proposal_id == 1 and newest.executed is False
        assert oldest.proposal_id == 0 and oldest.executed is True

    run_async(_test())
