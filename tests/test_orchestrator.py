import asyncio
import threading

from liquidai.config import ExecutionConfig
from liquidai.data.audit import AuditManager
from liquidai.data.market_data import MarketDataError, MarketObserver, PoolRecord
from liquidai.data.models import PriceFeed
from liquidai.data.store import HistoryStore
from liquidai.execution.coordinator import ExecutionCoordinator
from liquidai.ledger.client import SimulatedLedgerClient
from liquidai.orchestrator.orchestrator import CycleOutcome, Orchestrator, OrchestratorConfig
from liquidai.reasoning.reasoner import AllocationReasoner

OWNER = "0x" + "2" * 40
AGENT = "0x" + "1" * 40
POOL_A = "0x1234567890123456789012345678901234567890"
POOL_B = "0x2345678901234567890123456789012345678901"

RECORDS = [
    PoolRecord(POOL_A, 1_000_000.0, 200_000.0, 0.04),
    PoolRecord(POOL_B, 1_000_000.0, 10_000.0, 0.04),
]


def run_async(coro):
    return asyncio.run(coro)


class _Pools:
    def __init__(self, records=None, error=None):
        self.records = records if records is not None else list(RECORDS)
        self.error = error

    def fetch(self):
        if self.error is not None:
            raise self.error
        return list(self.records)


class _SlowPools(_Pools):
    def __init__(self, gate):
        super().__init__()
        self.gate = gate

    def fetch(self):
        self.gate.wait(5)
        return super().fetch()


class _Prices:
    def fetch(self):
        return [PriceFeed(feed_id="0xeth", price=2000.0, confidence=1.0, exponent=0)]


class _LowConfidenceReasoner(AllocationReasoner):
    def reason(self, snapshot):
        return super().reason(snapshot).model_copy(update={"confidence": 0.65})


class _CountingCoordinator(ExecutionCoordinator):
    calls = 0

    async def execute(self, strategy, *, cycle_id=None):
        self.calls += 1
        return await super().execute(strategy, cycle_id=cycle_id)


class _NoEventClient(SimulatedLedgerClient):
    async def propose(self, pools, ratios, reason):
        receipt = await super().propose(pools, ratios, reason)
        return receipt.model_copy(update={"events": []})


class _BrokenCoordinator(ExecutionCoordinator):
    async def execute(self, strategy, *, cycle_id=None):
        raise RuntimeError("boom")


def _build(pool_source=None, *, threshold=0.7, auto_execute=False, reasoner=None, coordinator_cls=_CountingCoordinator):
    audit = AuditManager()
    history = HistoryStore(limit=50)
    client = SimulatedLedgerClient.create(agent_identity=AGENT, owner_identity=OWNER)
    observer = MarketObserver(pool_source=pool_source if pool_source is not None else _Pools(), price_source=_Prices(), audit=audit)
    coordinator = coordinator_cls(
        client, config=ExecutionConfig(auto_execute=auto_execute), audit=audit, history=history
    )
    return Orchestrator(
        observer=observer,
        coordinator=coordinator,
        reasoner=reasoner,
        history=history,
        audit=audit,
        config=OrchestratorConfig(min_confidence_threshold=threshold),
    )


# --- Cycle outcomes ---

def test_cycle_proposes_when_confident():
    async def _test():
        orch = _build()
        result = await orch.run_cycle(trigger="manual")
        assert result.outcome == CycleOutcome.proposed
        assert result.confidence == 0.8
        assert result.execution.proposal_id == 0
        assert result.strategy.ratios() == {POOL_A: 5238, POOL_B: 4762}
        assert orch.coordinator.client.ledger.get_proposal_count() == 1
        assert orch.history.last_cycle()["outcome"] == "proposed"
        assert orch.audit.count("cycle_end") == 1

    run_async(_test())


def test_cycle_with_auto_execute_updates_allocations():
    async def _test():
        orch = _build(auto_execute=True)
        result = await orch.run_cycle()
        assert result.outcome == CycleOutcome.executed
        ledger = orch.coordinator.client.ledger
        assert ledger.get_pool_allocation(POOL_A) == 5238
        assert ledger.get_pool_allocation(POOL_B) == 4762

    run_async(_test())


def test_unknown_proposal_id_is_partial_not_success():
    async def _test():
        for auto_execute in (False, True):
            orch = _build(auto_execute=auto_execute)
            ledger = orch.coordinator.client.ledger
            orch.coordinator.client = _NoEventClient(ledger, agent_identity=AGENT, owner_identity=OWNER)
            result = await orch.run_cycle()
            assert result.outcome == CycleOutcome.partial
            assert "RebalanceProposed" in result.error
            assert result.summary()["proposal_id"] is None
            assert ledger.get_proposal_count() == 1
            assert ledger.get_pool_allocation(POOL_A) == 0

    run_async(_test())


def test_low_confidence_skips_coordinator():
    async def _test():
        orch = _build(reasoner=_LowConfidenceReasoner())
        result = await orch.run_cycle()
        assert result.outcome == CycleOutcome.skipped_low_confidence
        assert result.confidence == 0.65
        assert orch.coordinator.calls == 0
        assert orch.coordinator.client.ledger.get_proposal_count() == 0
        skip = orch.audit.recent(1, event_type="cycle_skipped_low_confidence")[0]
        assert skip["payload"]["threshold"] == 0.7
        assert orch.history.last_cycle()["outcome"] == "skipped_low_confidence"

    run_async(_test())


def test_observation_failure_aborts_without_side_effects():
    async def _test():
        # Negative TVL cannot form a valid snapshot.
        orch = _build(_Pools(records=[PoolRecord(POOL_A, -1.0, 0.0, 0.01)]))
        result = await orch.run_cycle()
        assert result.outcome == CycleOutcome.aborted
        assert result.error
        assert orch.coordinator.calls == 0
        assert orch.history.strategies() == []
        assert orch.audit.count("cycle_aborted") == 1
        assert not orch.busy

    run_async(_test())


def test_source_outage_uses_fallback_data_and_continues():
    async def _test():
        orch = _build(_Pools(error=MarketDataError("indexer down")))
        result = await orch.run_cycle()
        assert orch.observer.latest(1)[0].used_fallback
        assert orch.audit.count("market_data_fallback") == 1
        assert result.outcome == CycleOutcome.proposed

    run_async(_test())


def test_coordinator_crash_does_not_escape_cycle():
    async def _test():
        orch = _build(coordinator_cls=_BrokenCoordinator)
        result = await orch.run_cycle()
        assert result.outcome == CycleOutcome.failed
        assert result.error == "boom"
        again = await orch.run_cycle()
        assert again.outcome == CycleOutcome.failed
        assert orch.cycle_count == 2

    run_async(_test())


def test_empty_universe_is_skipped_by_confidence_gate():
    async def _test():
        orch = _build(_Pools(records=[]))
        result = await orch.run_cycle()
        assert result.outcome == CycleOutcome.skipped_low_confidence
        assert result.confidence == 0.0
        assert result.strategy.fallback

    run_async(_test())


# --- In-flight guard ---

def test_overlapping_cycle_is_dropped():
    async def _test():
        gate = threading.Event()
        orch = _build(_SlowPools(gate))
        first = asyncio.create_task(orch.run_cycle(trigger="scheduled"))
        while not orch.busy:
            await asyncio.sleep(0)

        second = await orch.run_cycle(trigger="scheduled")
        assert second.outcome == CycleOutcome.skipped_busy
        gate.set()

        done = await first
        assert done.outcome == CycleOutcome.proposed
        assert orch.skipped_busy == 1
        assert orch.cycle_count == 1
        assert orch.coordinator.client.ledger.get_proposal_count() == 1
        assert orch.audit.count("cycle_skipped_busy") == 1

        await orch.wait_idle()
        assert not orch.busy

    run_async(_test())
