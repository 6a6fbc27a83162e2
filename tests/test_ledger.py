import asyncio

import pytest

from liquidai.ledger.client import SimulatedLedgerClient, TransactionRejected
from liquidai.ledger.schemas import ZERO_ADDRESS, LedgerEventType
from liquidai.ledger.vault import (
    AlreadyExecuted,
    InvalidAllocation,
    InvalidAuthority,
    LengthMismatch,
    ProposalLedger,
    UnauthorizedCaller,
    UnknownProposal,
)

OWNER = "0x" + "2" * 40
AGENT = "0x" + "1" * 40
STRANGER = "0x" + "3" * 40
POOL_A = "0x1234567890123456789012345678901234567890"
POOL_B = "0x2345678901234567890123456789012345678901"


def run_async(coro):
    return asyncio.run(coro)


def _ledger():
    return ProposalLedger(owner=OWNER, agent_authority=AGENT, clock=lambda: 1_000)


# --- Proposal lifecycle ---

def test_round_trip_propose_execute_sets_allocations():
    ledger = _ledger()
    pid = ledger.propose(AGENT, [POOL_A, POOL_B], [6000, 4000], "Test rebalance proposal")
    assert pid == 0
    assert ledger.get_proposal_count() == 1
    assert ledger.pending_proposals()[0].proposal_id == 0

    done = ledger.execute(OWNER, pid)
    assert done.executed is True
    assert done.executor == OWNER
    assert ledger.get_pool_allocation(POOL_A) == 6000
    assert ledger.get_pool_allocation(POOL_B) == 4000
    assert ledger.pending_proposals() == []


def test_proposal_ids_are_sequential():
    ledger = _ledger()
    ids = [ledger.propose(AGENT, [POOL_A], [10_000], f"p{i}") for i in range(3)]
    assert ids == [0, 1, 2]


def test_execution_replaces_allocation_table_wholesale():
    ledger = _ledger()
    first = ledger.propose(AGENT, [POOL_A, POOL_B], [6000, 4000], "first")
    second = ledger.propose(AGENT, [POOL_B], [10_000], "second")
    ledger.execute(OWNER, first)
    ledger.execute(OWNER, second)
    assert ledger.get_pool_allocation(POOL_A) == 0
    assert ledger.get_pool_allocation(POOL_B) == 10_000


def test_double_execution_is_rejected_and_table_untouched():
    ledger = _ledger()
    first = ledger.propose(AGENT, [POOL_A, POOL_B], [6000, 4000], "first")
    ledger.execute(OWNER, first)
    # A later proposal executed in between would be overwritten by a replay.
    other = ledger.propose(AGENT, [POOL_A, POOL_B], [1000, 9000], "other")
    ledger.execute(OWNER, other)

    with pytest.raises(AlreadyExecuted):
        ledger.execute(OWNER, first)
    assert ledger.get_pool_allocation(POOL_A) == 1000
    assert ledger.get_pool_allocation(POOL_B) == 9000
    executed_events = [e for e in ledger.events if e.event_type == LedgerEventType.rebalance_executed]
    assert len(executed_events) == 2


# --- Validation ---

def test_propose_rejects_bad_allocations():
    ledger = _ledger()
    with pytest.raises(InvalidAllocation):
        ledger.propose(AGENT, [POOL_A, POOL_B], [6000, 3000], "Invalid allocation")
    with pytest.raises(LengthMismatch):
        ledger.propose(AGENT, [POOL_A, POOL_B], [6000], "Mismatched arrays")
    with pytest.raises(InvalidAllocation):
        ledger.propose(AGENT, [], [], "empty")
    with pytest.raises(InvalidAllocation):
        ledger.propose(AGENT, [POOL_A, POOL_B], [12_000, -2_000], "negative")
    assert ledger.get_proposal_count() == 0


def test_propose_rejects_non_integer_ratios():
    ledger = _ledger()
    for ratios in ([4000.5, 5999.5], [4000.0, 6000.0], ["4000", "6000"], [True, 9999]):
        with pytest.raises(InvalidAllocation):
            ledger.propose(AGENT, [POOL_A, POOL_B], ratios, "fractional")
    assert ledger.get_proposal_count() == 0
    assert ledger.events == []


def test_execute_rejects_unknown_ids():
    ledger = _ledger()
    ledger.propose(AGENT, [POOL_A], [10_000], "only")
    with pytest.raises(UnknownProposal):
        ledger.execute(OWNER, 1)
    with pytest.raises(UnknownProposal):
        ledger.execute(OWNER, -1)
    with pytest.raises(UnknownProposal):
        ledger.get_proposal(5)


# --- Authority separation ---

def test_only_agent_can_propose():
    ledger = _ledger()
    with pytest.raises(UnauthorizedCaller):
        ledger.propose(STRANGER, [POOL_A], [10_000], "Unauthorized proposal")
    with pytest.raises(UnauthorizedCaller):
        ledger.propose(OWNER, [POOL_A], [10_000], "owner is not the agent")


def test_only_owner_can_execute_or_change_authority():
    ledger = _ledger()
    pid = ledger.propose(AGENT, [POOL_A], [10_000], "x")
    with pytest.raises(UnauthorizedCaller):
        ledger.execute(AGENT, pid)
    with pytest.raises(UnauthorizedCaller):
        ledger.update_agent_authority(AGENT, STRANGER)
    assert ledger.get_proposal(pid).executed is False


def test_update_agent_authority():
    ledger = _ledger()
    ledger.update_agent_authority(OWNER, STRANGER)
    assert ledger.agent_authority == STRANGER
    with pytest.raises(UnauthorizedCaller):
        ledger.propose(AGENT, [POOL_A], [10_000], "old agent")
    assert ledger.propose(STRANGER, [POOL_A], [10_000], "new agent") == 0

    event = [e for e in ledger.events if e.event_type == LedgerEventType.agent_authority_updated][0]
    assert event.old_authority == AGENT
    assert event.new_authority == STRANGER

    with pytest.raises(InvalidAuthority):
        ledger.update_agent_authority(OWNER, ZERO_ADDRESS)
    with pytest.raises(InvalidAuthority):
        ledger.update_agent_authority(OWNER, "")


def test_deployer_may_hold_both_roles():
    ledger = ProposalLedger(owner=OWNER)
    pid = ledger.propose(OWNER, [POOL_A], [10_000], "self")
    ledger.execute(OWNER, pid)
    assert ledger.get_pool_allocation(POOL_A) == 10_000


def test_events_since_is_resumable():
    ledger = _ledger()
    ledger.propose(AGENT, [POOL_A], [10_000], "a")
    events, cursor = ledger.events_since(0)
    assert [e.event_type for e in events] == [LedgerEventType.rebalance_proposed]
    ledger.execute(OWNER, 0)
    more, cursor2 = ledger.events_since(cursor)
    assert [e.event_type for e in more] == [LedgerEventType.rebalance_executed]
    assert cursor2 == 2
    assert ledger.events_since(cursor2) == ([], 2)


# --- Simulated client ---

def test_simulated_client_receipts_and_rejections():
    async def _test():
        client = SimulatedLedgerClient.create(agent_identity=AGENT, owner_identity=OWNER)
        receipt = await client.propose([POOL_A, POOL_B], [6000, 4000], "Test execution")
        created = receipt.first_event(LedgerEventType.rebalance_proposed)
        assert created is not None and created.proposal_id == 0
        assert created.tx_hash == receipt.tx_hash
        assert receipt.tx_hash.startswith("0x")

        exec_receipt = await client.execute(0)
        assert exec_receipt.first_event(LedgerEventType.rebalance_executed) is not None
        assert exec_receipt.block_number > receipt.block_number
        assert await client.get_pool_allocation(POOL_A) == 6000

        with pytest.raises(TransactionRejected) as excinfo:
            await client.execute(0)
        assert isinstance(excinfo.value.cause, AlreadyExecuted)

        with pytest.raises(TransactionRejected):
            await client.propose([POOL_A], [9_999], "bad sum")
        assert await client.get_proposal_count() == 1

    run_async(_test())


def test_simulated_client_without_owner_cannot_execute():
    async def _test():
        ledger = ProposalLedger(owner=OWNER, agent_authority=AGENT)
        client = SimulatedLedgerClient(ledger, agent_identity=AGENT)
        await client.propose([POOL_A], [10_000], "x")
        with pytest.raises(TransactionRejected):
            await client.execute(0)
        assert [p.proposal_id for p in await client.pending_proposals()] == [0]

    run_async(_test())
