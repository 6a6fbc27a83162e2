"""Owned history store for strategies, execution results and cycle outcomes.

One instance is injected into the orchestrator (and shared with the
coordinator). Histories are append-only with bounded eviction; when a
`MongoManager` is configured each append is also written to its collection.
Snapshots (kept by the observer's rolling log) and ledger events (kept by the
ledger) are only persisted here.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from pymongo.errors import PyMongoError

from .mongo import MongoManager, jsonify, utc_now
from .schemas import ALLOCATION_STRATEGIES, CYCLE_OUTCOMES, EXECUTIONS, LEDGER_EVENTS, MARKET_SNAPSHOTS


class HistoryStore:
    def __init__(self, *, limit: int = 500, mongo: Optional[MongoManager] = None):
        self.limit = max(1, int(limit))
        self.mongo = mongo
        self._strategies: Deque[Any] = deque(maxlen=self.limit)
        self._executions: Deque[Any] = deque(maxlen=self.limit)
        self._cycles: Deque[Dict[str, Any]] = deque(maxlen=self.limit)
        self.persist_errors = 0

    async def _persist(self, collection: str, item: Any) -> None:
        if self.mongo is None:
            return
        doc = jsonify(item)
        if isinstance(doc, dict):
            doc.setdefault("recorded_at", utc_now())
        try:
            await self.mongo.insert_one(collection, doc)
        except PyMongoError:
            # Memory copy stays authoritative; counted for the status API.
            self.persist_errors += 1

    async def add_snapshot(self, snapshot: Any) -> None:
        await self._persist(MARKET_SNAPSHOTS, snapshot)

    async def add_strategy(self, strategy: Any) -> None:
        self._strategies.append(strategy)
        await self._persist(ALLOCATION_STRATEGIES, strategy)

    async def add_execution(self, result: Any) -> None:
        self._executions.append(result)
        await self._persist(EXECUTIONS, result)

    async def add_ledger_event(self, event: Any) -> None:
        await self._persist(LEDGER_EVENTS, event)

    async def add_cycle(self, outcome: Dict[str, Any]) -> None:
        self._cycles.append(outcome)
        await self._persist(CYCLE_OUTCOMES, outcome)

    def replace_executions(self, results: Iterable[Any]) -> None:
        """Reset execution history (used when rebuilding from the ledger)."""
        self._executions.clear()
        self._executions.extend(results)

    @staticmethod
    def _newest(items: Deque[Any], limit: Optional[int]) -> List[Any]:
        out = list(reversed(items))
        return out if limit is None else out[: max(0, int(limit))]

    def strategies(self, limit: Optional[int] = None) -> List[Any]:
        return self._newest(self._strategies, limit)

    def executions(self, limit: Optional[int] = None) -> List[Any]:
        return self._newest(self._executions, limit)

    def cycles(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._newest(self._cycles, limit)

    def last_cycle(self) -> Optional[Dict[str, Any]]:
        return self._cycles[-1] if self._cycles else None


__all__ = ["HistoryStore"]
