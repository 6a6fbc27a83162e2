"""Audit logging helpers.

Audit events are the record of every decision and side effect. Each event is
kept in a bounded in-memory ring (served by the status API) and, when a
`MongoManager` is configured, persisted to the `audit_log` collection.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

from pymongo.errors import PyMongoError

from liquidai.data.mongo import MongoManager, jsonify, utc_now


@dataclass(frozen=True)
class AuditContext:
    cycle_id: Optional[str] = None
    component: Optional[str] = None


class AuditManager:
    """Ring-buffered audit log with optional Mongo persistence."""

    def __init__(self, mongo: Optional[MongoManager] = None, *, capacity: int = 1000):
        self.mongo = mongo
        self._events: Deque[Dict[str, Any]] = deque(maxlen=max(1, int(capacity)))

    async def log(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        ctx: Optional[AuditContext] = None,
        cycle_id: Optional[str] = None,
        component: Optional[str] = None,
        level: str = "info",
    ) -> Dict[str, Any]:
        c = ctx if ctx is not None else AuditContext()
        event: Dict[str, Any] = {
            "timestamp": utc_now(),
            "event_type": event_type,
            "level": level,
            "cycle_id": cycle_id or c.cycle_id,
            "component": component or c.component,
            "payload": jsonify(payload),
        }
        self._events.append(event)

        if self.mongo is not None:
            try:
                event["ref"] = await self.mongo.log_audit_event(
                    event_type,
                    event["payload"],
                    cycle_id=event["cycle_id"],
                    component=event["component"],
                    level=level,
                    timestamp=event["timestamp"],
                )
            except PyMongoError as e:
                # The in-memory record stays authoritative for this process.
                event["persist_error"] = str(e)
        return event

    def recent(self, limit: int = 50, *, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Newest-first events, optionally filtered by type."""
        items = [e for e in reversed(self._events) if event_type is None or e["event_type"] == event_type]
        return items[: max(0, int(limit))]

    def count(self, event_type: str) -> int:
        return sum(1 for e in self._events if e["event_type"] == event_type)


__all__ = ["AuditContext", "AuditManager"]
