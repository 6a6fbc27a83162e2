"""Cadence loop using APScheduler.

Supports:
- run once
- run continuously: one delayed initial cycle, then a fixed interval
- standalone observation cadence (optional)
- ledger event subscription, audited as `ledger_event`

Runner state is `stopped -> running -> stopped`. Stopping shuts the scheduler
down and waits for an in-flight cycle; a pending confirmation is never cut.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from liquidai.config import AppConfig, ExecutionConfig
from liquidai.data.audit import AuditContext, AuditManager
from liquidai.data.market_data import MarketObserver
from liquidai.data.mongo import MongoManager
from liquidai.data.store import HistoryStore
from liquidai.execution.coordinator import ExecutionCoordinator
from liquidai.ledger.client import LedgerClient, SimulatedLedgerClient, TransportError
from liquidai.ledger.events import EventSubscription
from liquidai.ledger.web3_client import Web3LedgerClient
from liquidai.orchestrator.orchestrator import CycleResult, Orchestrator, OrchestratorConfig
from liquidai.reasoning.reasoner import AllocationReasoner


SIM_AGENT_IDENTITY = "0x" + "1" * 40
SIM_OWNER_IDENTITY = "0x" + "2" * 40


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunnerState(str, Enum):
    stopped = "stopped"
    running = "running"


@dataclass(frozen=True)
class MainLoopConfig:
    interval_s: int = 300
    initial_delay_s: int = 10
    observe_interval_s: int = 0  # 0 = observe only inside cycles
    event_poll_interval_s: float = 5.0
    watch_events: bool = True
    rebuild_history: bool = True


def build_ledger_client(app_config: AppConfig) -> LedgerClient:
    if app_config.ledger.mode == "web3":
        return Web3LedgerClient.from_config(app_config.ledger)
    return SimulatedLedgerClient.create(agent_identity=SIM_AGENT_IDENTITY, owner_identity=SIM_OWNER_IDENTITY)


class OrchestratorRunner:
    """Owns the scheduler, the event subscription and the stop signal."""

    def __init__(
        self,
        *,
        orchestrator: Orchestrator,
        ledger_client: LedgerClient,
        cfg: Optional[MainLoopConfig] = None,
        audit: Optional[AuditManager] = None,
        app_config: Optional[AppConfig] = None,
    ):
        self.orchestrator = orchestrator
        self.ledger_client = ledger_client
        self.cfg = cfg if cfg is not None else MainLoopConfig()
        self.audit = audit if audit is not None else orchestrator.audit
        self.app_config = app_config
        self.state = RunnerState.stopped
        self.started_at: Optional[datetime] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._subscription: Optional[EventSubscription] = None
        self._events_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._ctx = AuditContext(component="main_loop")

    @property
    def observer(self) -> MarketObserver:
        return self.orchestrator.observer

    @property
    def history(self) -> HistoryStore:
        return self.orchestrator.history

    @property
    def running(self) -> bool:
        return self.state == RunnerState.running

    # -----------------
    # Jobs
    # -----------------

    async def _cycle_job(self, trigger: str = "scheduled") -> CycleResult:
        return await self.orchestrator.run_cycle(trigger=trigger)

    async def _observe_job(self) -> None:
        if self.orchestrator.busy:
            return
        try:
            await self.observer.observe()
        except Exception as e:  # pylint: disable=broad-exception-caught
            await self.audit.log(
                "observe_error",
                {"error": str(e), "error_type": type(e).__name__},
                ctx=AuditContext(component="observer"),
                level="error",
            )

    async def _watch_events(self, subscription: EventSubscription) -> None:
        while not subscription.stopped:
            try:
                async for event in subscription:
                    await self.history.add_ledger_event(event)
                    await self.audit.log(
                        "ledger_event",
                        event.model_dump(mode="json"),
                        ctx=AuditContext(component="ledger"),
                    )
            except TransportError as e:
                await self.audit.log(
                    "ledger_event_error",
                    {"error": str(e), "cursor": subscription.cursor},
                    ctx=AuditContext(component="ledger"),
                    level="warning",
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=subscription.poll_interval_s)
                except asyncio.TimeoutError:
                    pass

    # -----------------
    # Lifecycle
    # -----------------

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()

        if self.cfg.rebuild_history:
            try:
                rebuilt = await self.orchestrator.coordinator.rebuild_history()
                await self.audit.log("execution_history_rebuilt", {"proposals": rebuilt}, ctx=self._ctx)
            except TransportError as e:
                await self.audit.log(
                    "execution_history_rebuild_failed", {"error": str(e)}, ctx=self._ctx, level="warning"
                )

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._cycle_job,
            trigger="interval",
            seconds=max(1, int(self.cfg.interval_s)),
            id="rebalance_cycle",
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self._cycle_job,
            trigger="date",
            run_date=_utc_now() + timedelta(seconds=max(0, int(self.cfg.initial_delay_s))),
            kwargs={"trigger": "initial"},
            id="initial_cycle",
        )
        if self.cfg.observe_interval_s and self.cfg.observe_interval_s > 0:
            scheduler.add_job(
                self._observe_job,
                trigger="interval",
                seconds=int(self.cfg.observe_interval_s),
                id="market_observation",
                max_instances=1,
                coalesce=True,
            )
        scheduler.start()
        self._scheduler = scheduler

        if self.cfg.watch_events:
            self._subscription = EventSubscription(
                self.ledger_client, poll_interval_s=self.cfg.event_poll_interval_s
            )
            self._events_task = asyncio.create_task(self._watch_events(self._subscription))

        self.state = RunnerState.running
        self.started_at = _utc_now()
        await self.audit.log(
            "main_loop_start",
            {
                "interval_s": self.cfg.interval_s,
                "initial_delay_s": self.cfg.initial_delay_s,
                "observe_interval_s": self.cfg.observe_interval_s,
                "ledger_mode": self.ledger_client.mode,
            },
            ctx=self._ctx,
        )

    async def stop(self) -> None:
        if not self.running:
            return
        self._stop_event.set()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._subscription is not None:
            self._subscription.stop()
        if self._events_task is not None:
            await self._events_task
            self._events_task = None
        # Let an in-flight cycle finish; its transactions cannot be rolled back.
        await self.orchestrator.wait_idle()
        self.state = RunnerState.stopped
        await self.audit.log("main_loop_stop", {"cycles": self.orchestrator.cycle_count}, ctx=self._ctx)

    async def trigger(self) -> CycleResult:
        """Manual cycle outside the schedule (same guard and side effects)."""
        return await self._cycle_job(trigger="manual")

    async def run_forever(self) -> None:
        def _request_stop(*_args: object) -> None:
            self._stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _request_stop)
            except NotImplementedError:
                signal.signal(sig, lambda *_a: _request_stop())

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        self._stop_event.set()

    def status(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "state": self.state.value,
            "running": self.running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ledger_mode": self.ledger_client.mode,
            "interval_s": self.cfg.interval_s,
            "observations": len(self.observer),
        }
        out.update(self.orchestrator.status())
        if self.app_config is not None:
            out["contract_address"] = self.app_config.ledger.contract_address
        return out


def build_runner(
    app_config: AppConfig,
    *,
    ledger_client: Optional[LedgerClient] = None,
    observer: Optional[MarketObserver] = None,
    mongo: Optional[MongoManager] = None,
    cfg: Optional[MainLoopConfig] = None,
) -> OrchestratorRunner:
    """Wire observer, reasoner, coordinator and orchestrator from config."""
    audit = AuditManager(mongo)
    history = HistoryStore(limit=app_config.scheduler.history_limit, mongo=mongo)
    client = ledger_client if ledger_client is not None else build_ledger_client(app_config)
    obs = observer if observer is not None else MarketObserver.from_app_config(app_config, audit=audit)
    execution_cfg: ExecutionConfig = app_config.execution
    coordinator = ExecutionCoordinator(client, config=execution_cfg, audit=audit, history=history)
    orchestrator = Orchestrator(
        observer=obs,
        coordinator=coordinator,
        reasoner=AllocationReasoner(),
        history=history,
        audit=audit,
        config=OrchestratorConfig(min_confidence_threshold=execution_cfg.min_confidence_threshold),
    )
    loop_cfg = cfg if cfg is not None else MainLoopConfig(
        interval_s=app_config.scheduler.interval_s,
        initial_delay_s=app_config.scheduler.initial_delay_s,
        observe_interval_s=app_config.observer.observe_interval_s,
    )
    return OrchestratorRunner(
        orchestrator=orchestrator,
        ledger_client=client,
        cfg=loop_cfg,
        audit=audit,
        app_config=app_config,
    )


async def run_once(runner: OrchestratorRunner) -> CycleResult:
    return await runner.trigger()


__all__ = [
    "MainLoopConfig",
    "OrchestratorRunner",
    "RunnerState",
    "build_ledger_client",
    "build_runner",
    "run_once",
]
