"""MongoDB collection names and index specs.

Mongo is optional for this service: the in-process stores are authoritative
for a running process, the ledger is authoritative for proposals, and Mongo
keeps a durable copy for dashboards and post-mortems.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING


IndexSpec = Sequence[Tuple[str, int]]


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    required_keys: Sequence[str]
    indexes: Sequence[IndexSpec]


MARKET_SNAPSHOTS = "market_snapshots"
ALLOCATION_STRATEGIES = "allocation_strategies"
EXECUTIONS = "executions"
CYCLE_OUTCOMES = "cycle_outcomes"
LEDGER_EVENTS = "ledger_events"
AUDIT_LOG = "audit_log"


COLLECTION_SPECS: Dict[str, CollectionSpec] = {
    MARKET_SNAPSHOTS: CollectionSpec(
        name=MARKET_SNAPSHOTS,
        required_keys=("timestamp", "pools"),
        indexes=((("timestamp", DESCENDING),),),
    ),
    ALLOCATION_STRATEGIES: CollectionSpec(
        name=ALLOCATION_STRATEGIES,
        required_keys=("timestamp", "pools", "confidence"),
        indexes=((("timestamp", DESCENDING),),),
    ),
    EXECUTIONS: CollectionSpec(
        name=EXECUTIONS,
        required_keys=("timestamp", "success"),
        indexes=(
            (("timestamp", DESCENDING),),
            (("proposal_id", ASCENDING),),
        ),
    ),
    CYCLE_OUTCOMES: CollectionSpec(
        name=CYCLE_OUTCOMES,
        required_keys=("cycle_id", "outcome"),
        indexes=(
            (("started_at", DESCENDING),),
            (("outcome", ASCENDING), ("started_at", DESCENDING)),
        ),
    ),
    LEDGER_EVENTS: CollectionSpec(
        name=LEDGER_EVENTS,
        required_keys=("event_type", "cursor"),
        indexes=(
            (("proposal_id", ASCENDING),),
            (("cursor", ASCENDING),),
        ),
    ),
    AUDIT_LOG: CollectionSpec(
        name=AUDIT_LOG,
        required_keys=("timestamp", "event_type", "payload"),
        indexes=(
            (("timestamp", DESCENDING),),
            (("cycle_id", ASCENDING), ("timestamp", DESCENDING)),
            (("component", ASCENDING), ("timestamp", DESCENDING)),
            (("event_type", ASCENDING), ("timestamp", DESCENDING)),
        ),
    ),
}
