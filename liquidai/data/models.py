"""Market observation contracts.

A `MarketSnapshot` is one immutable observation of the pool universe. Derived
aggregates (`average_apr`, `total_tvl`) are computed from `pools` and cannot
be supplied independently.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class DataSource(str, Enum):
    live = "live"
    fallback = "fallback"


class PoolMetrics(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    tvl_usd: float = Field(..., ge=0)
    volume_24h: float = Field(..., ge=0)
    fee_apr: float = Field(..., ge=0)
    timestamp: Optional[int] = Field(None, description="Source timestamp (unix seconds), if known.")


class PriceFeed(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    feed_id: str = Field(..., min_length=1)
    price: float = Field(..., description="Price scaled by 10**exponent.")
    confidence: float = Field(0.0, ge=0)
    exponent: int = 0
    publish_time: Optional[int] = None


class Recommendation(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str
    message: str
    priority: str
    action: str
    pool_address: Optional[str] = None


class MarketSnapshot(BaseModel):
    """Immutable, timestamped observation of the pool universe."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    timestamp: int = Field(..., ge=0, description="Unix milliseconds.")
    pools: Dict[str, PoolMetrics] = Field(default_factory=dict)
    market_volatility: float = Field(0.0, ge=0.0, le=1.0)
    pool_source: DataSource = DataSource.live
    price_source: DataSource = DataSource.live
    recommendations: List[Recommendation] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_apr(self) -> float:
        if not self.pools:
            return 0.0
        return sum(p.fee_apr for p in self.pools.values()) / len(self.pools)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tvl(self) -> float:
        return sum(p.tvl_usd for p in self.pools.values())

    @property
    def total_volume_24h(self) -> float:
        return sum(p.volume_24h for p in self.pools.values())

    @property
    def min_fee_apr(self) -> float:
        if not self.pools:
            return 0.0
        return min(p.fee_apr for p in self.pools.values())

    @property
    def max_tvl_share(self) -> float:
        """Largest single-pool share of total TVL (0 when TVL is zero)."""
        total = self.total_tvl
        if total <= 0:
            return 0.0
        return max(p.tvl_usd for p in self.pools.values()) / total

    @property
    def is_actionable(self) -> bool:
        return bool(self.pools)

    @property
    def used_fallback(self) -> bool:
        return DataSource.fallback in (self.pool_source, self.price_source)


__all__ = ["DataSource", "MarketSnapshot", "PoolMetrics", "PriceFeed", "Recommendation"]
