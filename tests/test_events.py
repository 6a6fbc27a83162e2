import asyncio

from liquidai.ledger.client import SimulatedLedgerClient
from liquidai.ledger.events import EventSubscription
from liquidai.ledger.schemas import LedgerEventType

OWNER = "0x" + "2" * 40
AGENT = "0x" + "1" * 40
POOL_A = "0x1234567890123456789012345678901234567890"


def run_async(coro):
    return asyncio.run(coro)


def _client():
    return SimulatedLedgerClient.create(agent_identity=AGENT, owner_identity=OWNER)


def test_subscription_yields_in_order_and_resumes():
    async def _test():
        client = _client()
        await client.propose([POOL_A], [10_000], "first")

        sub = EventSubscription(client, poll_interval_s=0.01)
        first = await sub.next_event(timeout_s=1.0)
        assert first.event_type == LedgerEventType.rebalance_proposed
        assert first.proposal_id == 0
        assert sub.cursor == 1

        await client.execute(0)
        await client.propose([POOL_A], [10_000], "second")
        executed = await sub.next_event(timeout_s=1.0)
        assert executed.event_type == LedgerEventType.rebalance_executed
        # The second proposal is buffered but not yet delivered.
        assert sub.cursor == 2

        resumed = EventSubscription(client, cursor=sub.cursor, poll_interval_s=0.01)
        third = await resumed.next_event(timeout_s=1.0)
        assert third.event_type == LedgerEventType.rebalance_proposed
        assert third.proposal_id == 1
        assert await resumed.next_event(timeout_s=0.05) is None

    run_async(_test())


def test_stop_ends_iteration():
    async def _test():
        client = _client()
        await client.propose([POOL_A], [10_000], "only")
        sub = EventSubscription(client, poll_interval_s=10.0)
        seen = []

        async def _consume():
            async for event in sub:
                seen.append(event)

        task = asyncio.create_task(_consume())
        await asyncio.sleep(0.05)
        sub.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert [e.proposal_id for e in seen] == [0]
        assert sub.stopped
        assert await sub.next_event(timeout_s=0.1) is None

    run_async(_test())


def test_authority_update_is_delivered():
    async def _test():
        client = _client()
        new_agent = "0x" + "3" * 40
        await client.update_agent_authority(new_agent)
        event = await EventSubscription(client, poll_interval_s=0.01).next_event(timeout_s=1.0)
        assert event.event_type == LedgerEventType.agent_authority_updated
        assert event.new_authority == new_agent

    run_async(_test())
