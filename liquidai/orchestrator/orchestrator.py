"""Single-cycle orchestrator.

One cycle, strictly sequential:
  observe -> reason -> confidence gate -> coordinator -> record outcome

Notes:
- Cycles never overlap: a cycle requested while another is in flight is
  dropped (`skipped_busy`), not queued.
- A cycle never raises to its caller. Observation failures abort the cycle
  before any side effect; every outcome is audited and kept in history.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from liquidai.data.audit import AuditContext, AuditManager
from liquidai.data.market_data import MarketObserver
from liquidai.data.mongo import now_ms
from liquidai.data.store import HistoryStore
from liquidai.execution.coordinator import ExecutionCoordinator, StrategyValidationError
from liquidai.execution.schemas import ExecutionResult
from liquidai.reasoning.reasoner import AllocationReasoner
from liquidai.reasoning.schemas import AllocationStrategy


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _default_cycle_id() -> str:
    return _utc_now().strftime("cycle_%Y%m%d_%H%M%S_%f")


class CycleOutcome(str, Enum):
    proposed = "proposed"
    executed = "executed"
    partial = "partial"
    failed = "failed"
    rejected = "rejected"
    skipped_low_confidence = "skipped_low_confidence"
    skipped_busy = "skipped_busy"
    aborted = "aborted"


@dataclass(frozen=True)
class OrchestratorConfig:
    min_confidence_threshold: float = 0.7


@dataclass(frozen=True)
class CycleResult:
    cycle_id: str
    trigger: str
    outcome: CycleOutcome
    started_at: int
    finished_at: int
    snapshot_timestamp: Optional[int] = None
    confidence: Optional[float] = None
    strategy: Optional[AllocationStrategy] = None
    execution: Optional[ExecutionResult] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "trigger": self.trigger,
            "outcome": self.outcome.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.finished_at - self.started_at,
            "snapshot_timestamp": self.snapshot_timestamp,
            "confidence": self.confidence,
            "proposal_id": self.execution.proposal_id if self.execution is not None else None,
            "executed": self.execution.executed if self.execution is not None else False,
            "error": self.error,
        }


def _outcome_for(result: ExecutionResult) -> CycleOutcome:
    if not result.success:
        return CycleOutcome.failed
    if result.proposal_unknown:
        return CycleOutcome.partial
    if not result.auto_execute:
        return CycleOutcome.proposed
    return CycleOutcome.executed if result.executed else CycleOutcome.partial


class Orchestrator:
    def __init__(
        self,
        *,
        observer: MarketObserver,
        coordinator: ExecutionCoordinator,
        reasoner: Optional[AllocationReasoner] = None,
        history: Optional[HistoryStore] = None,
        audit: Optional[AuditManager] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.observer = observer
        self.coordinator = coordinator
        self.reasoner = reasoner if reasoner is not None else AllocationReasoner()
        self.history = history if history is not None else coordinator.history
        self.audit = audit if audit is not None else AuditManager()
        self.config = config if config is not None else OrchestratorConfig()
        self.cycle_count = 0
        self.skipped_busy = 0
        self._busy = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def busy(self) -> bool:
        return self._busy

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def run_cycle(self, *, trigger: str = "scheduled", cycle_id: Optional[str] = None) -> CycleResult:
        cycle_id = cycle_id or _default_cycle_id()
        started = now_ms()
        if self._busy:
            self.skipped_busy += 1
            await self.audit.log(
                "cycle_skipped_busy",
                {"cycle_id": cycle_id, "trigger": trigger},
                ctx=AuditContext(cycle_id=cycle_id, component="orchestrator"),
                level="warning",
            )
            return CycleResult(
                cycle_id=cycle_id,
                trigger=trigger,
                outcome=CycleOutcome.skipped_busy,
                started_at=started,
                finished_at=now_ms(),
            )

        self._busy = True
        self._idle.clear()
        try:
            result = await self._run(cycle_id=cycle_id, trigger=trigger, started=started)
        finally:
            self._busy = False
            self._idle.set()
        return result

    async def _run(self, *, cycle_id: str, trigger: str, started: int) -> CycleResult:
        ctx = AuditContext(cycle_id=cycle_id, component="orchestrator")
        self.cycle_count += 1
        await self.audit.log("cycle_start", {"cycle_id": cycle_id, "trigger": trigger}, ctx=ctx)

        def _done(outcome: CycleOutcome, **kwargs: Any) -> CycleResult:
            return CycleResult(
                cycle_id=cycle_id,
                trigger=trigger,
                outcome=outcome,
                started_at=started,
                finished_at=now_ms(),
                **kwargs,
            )

        # 1) Observe
        try:
            snapshot = await self.observer.observe(cycle_id=cycle_id)
        except Exception as e:  # pylint: disable=broad-exception-caught
            await self.audit.log(
                "cycle_aborted",
                {"cycle_id": cycle_id, "stage": "observe", "error": str(e), "error_type": type(e).__name__},
                ctx=ctx,
                level="error",
            )
            return await self._finish(_done(CycleOutcome.aborted, error=str(e)), ctx)

        try:
            await self.history.add_snapshot(snapshot)

            # 2) Reason
            strategy = self.reasoner.reason(snapshot)
            await self.history.add_strategy(strategy)
            await self.audit.log(
                "strategy_ready",
                {
                    "cycle_id": cycle_id,
                    "confidence": strategy.confidence,
                    "allocations": strategy.ratios(),
                    "triggered_rules": [r.name for r in strategy.triggered_rules],
                    "fallback": strategy.fallback,
                },
                ctx=ctx,
            )
            common = {
                "snapshot_timestamp": snapshot.timestamp,
                "confidence": strategy.confidence,
                "strategy": strategy,
            }

            # 3) Confidence gate
            threshold = float(self.config.min_confidence_threshold)
            if strategy.confidence < threshold:
                await self.audit.log(
                    "cycle_skipped_low_confidence",
                    {"cycle_id": cycle_id, "confidence": strategy.confidence, "threshold": threshold},
                    ctx=ctx,
                )
                return await self._finish(_done(CycleOutcome.skipped_low_confidence, **common), ctx)

            # 4) Execute
            try:
                execution = await self.coordinator.execute(strategy, cycle_id=cycle_id)
            except StrategyValidationError as e:
                return await self._finish(_done(CycleOutcome.rejected, error=str(e), **common), ctx)

            return await self._finish(
                _done(_outcome_for(execution), execution=execution, error=execution.error, **common),
                ctx,
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            await self.audit.log(
                "cycle_error",
                {"cycle_id": cycle_id, "error": str(e), "error_type": type(e).__name__},
                ctx=ctx,
                level="error",
            )
            return await self._finish(_done(CycleOutcome.failed, error=str(e)), ctx)

    async def _finish(self, result: CycleResult, ctx: AuditContext) -> CycleResult:
        summary = result.summary()
        await self.history.add_cycle(summary)
        await self.audit.log("cycle_end", summary, ctx=ctx)
        return result

    def status(self) -> Dict[str, Any]:
        return {
            "in_flight": self._busy,
            "cycle_count": self.cycle_count,
            "skipped_busy": self.skipped_busy,
            "last_cycle": self.history.last_cycle(),
            "min_confidence_threshold": self.config.min_confidence_threshold,
            "auto_execute": self.coordinator.auto_execute,
        }


__all__ = ["CycleOutcome", "CycleResult", "Orchestrator", "OrchestratorConfig"]
