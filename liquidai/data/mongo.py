"""MongoDB connection manager (optional persistence).

Async connectivity via Motor, index setup from `schemas.py`, and small
insert/query helpers used by the audit log and the history stores.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from .schemas import AUDIT_LOG, COLLECTION_SPECS


def utc_now() -> datetime:
    """UTC timestamp helper."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def jsonify(value: Any) -> Any:
    """Best-effort conversion to JSON/BSON-safe types."""
    # pylint: disable=too-many-return-statements,broad-exception-caught
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, (list, tuple, set)):
        return [jsonify(v) for v in value]
    if isinstance(value, dict):
        return {str(k): jsonify(v) for k, v in value.items()}
    # Pydantic v2
    if hasattr(value, "model_dump"):
        try:
            return jsonify(value.model_dump(mode="json"))
        except Exception:
            pass
    if hasattr(value, "to_dict"):
        try:
            return jsonify(value.to_dict())
        except Exception:
            pass
    if hasattr(value, "json"):
        try:
            return json.loads(value.json())
        except Exception:
            pass
    try:
        return jsonify(vars(value))
    except Exception:
        return str(value)


class MongoManager:
    """Async MongoDB manager using Motor."""

    def __init__(self, db_name: str = "liquidai", uri: Optional[str] = None):
        self.uri = uri or os.getenv("MONGODB_URI") or os.getenv("MONGODB_URL")
        if not self.uri:
            raise RuntimeError("MONGODB_URI (or MONGODB_URL) is not set in env.")
        self.db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self._indexes_ready = False

    async def connect(self) -> AsyncIOMotorDatabase:
        """Connect (lazily) and return the database handle."""
        if self.client is None:
            self.client = AsyncIOMotorClient(self.uri)
            self.db = self.client[self.db_name]
        if self.db is None:
            raise RuntimeError("MongoManager failed to connect.")
        return self.db

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
        self.client = None
        self.db = None
        self._indexes_ready = False

    def collection(self, name: str) -> AsyncIOMotorCollection:
        """Get a collection handle (requires connect)."""
        if self.db is None:
            raise RuntimeError("MongoManager not connected. Call await connect().")
        return self.db[name]

    async def ensure_indexes(self) -> None:
        """Create indexes declared in schemas.py (once per connection)."""
        await self.connect()
        if self._indexes_ready:
            return
        for spec in COLLECTION_SPECS.values():
            col = self.collection(spec.name)
            for idx in spec.indexes:
                try:
                    await col.create_index(list(idx))
                except PyMongoError:
                    # Index may already exist with other options.
                    continue
        self._indexes_ready = True

    async def insert_one(self, collection: str, doc: Dict[str, Any]) -> str:
        """Insert a document and return inserted id as str."""
        await self.connect()
        res = await self.collection(collection).insert_one(jsonify(doc))
        return str(res.inserted_id)

    async def log_audit_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        cycle_id: Optional[str] = None,
        component: Optional[str] = None,
        level: str = "info",
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Insert an audit event into audit_log."""
        doc: Dict[str, Any] = {
            "timestamp": timestamp or utc_now(),
            "event_type": event_type,
            "level": level,
            "payload": payload,
        }
        if cycle_id:
            doc["cycle_id"] = cycle_id
        if component:
            doc["component"] = component
        return await self.insert_one(AUDIT_LOG, doc)


__all__ = ["MongoManager", "jsonify", "now_ms", "utc_now"]
