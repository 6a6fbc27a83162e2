"""Market observation: pool metrics + price feeds → `MarketSnapshot`.

Sources are thin HTTP connectors (requests). A source failure never reaches
the pipeline: the observer substitutes the documented fallback dataset, tags
the snapshot as `fallback` and records a `market_data_fallback` audit event so
telemetry can tell it apart from a live fetch.
"""

from __future__ import annotations

import asyncio
import math
import statistics
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

import requests
from pydantic import ValidationError

from ..config import AppConfig, ObserverConfig
from .audit import AuditContext, AuditManager
from .models import DataSource, MarketSnapshot, PoolMetrics, PriceFeed, Recommendation
from .mongo import now_ms


POOL_METRICS_QUERY = """
query GetPoolMetrics {
    poolMetrics(first: 10, orderBy: timestamp, orderDirection: desc) {
        id
        poolAddress
        tvlUSD
        volume24h
        feeAPR
        timestamp
    }
}
"""

# Confidence band of 1% of price maps to full-scale volatility.
CONFIDENCE_BAND_SCALE = 100.0
REALIZED_VOL_SCALE = 10.0
PRICE_HISTORY_LEN = 20

HIGH_VOLATILITY = 0.6
LOW_AVERAGE_APR = 0.03
VERY_LOW_POOL_APR = 0.01


class MarketDataError(RuntimeError):
    pass


class ObservationError(RuntimeError):
    """Raised when an observation cannot be turned into a valid snapshot."""


@dataclass(frozen=True)
class PoolRecord:
    pool_address: str
    tvl_usd: float
    volume_24h: float
    fee_apr: float
    timestamp: Optional[int] = None


def fallback_pool_records(now_s: Optional[int] = None) -> List[PoolRecord]:
    """Fallback dataset used when the pool-metrics source is unreachable."""
    ts = now_s if now_s is not None else now_ms() // 1000
    return [
        PoolRecord("0x1234567890123456789012345678901234567890", 1_000_000.0, 50_000.0, 0.05, ts),
        PoolRecord("0x2345678901234567890123456789012345678901", 2_000_000.0, 100_000.0, 0.03, ts),
    ]


def fallback_price_feeds() -> List[PriceFeed]:
    """Fallback dataset used when the price-feed source is unreachable."""
    return [
        PriceFeed(
            feed_id="0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
            price=250_000_000_000.0,
            confidence=1_000_000.0,
            exponent=-8,
        )
    ]


def _float(value: Any, field: str) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise MarketDataError(f"non-numeric {field}: {value!r}") from e
    if not math.isfinite(out):
        raise MarketDataError(f"non-finite {field}: {value!r}")
    return out


def _int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise MarketDataError(f"non-integer {field}: {value!r}") from e


def parse_pool_metrics(payload: Any) -> List[PoolRecord]:
    """Parse a GraphQL `poolMetrics` response; newest row per pool wins."""
    if not isinstance(payload, dict):
        raise MarketDataError(f"pool metrics response is not an object: {type(payload).__name__}")
    if payload.get("errors"):
        raise MarketDataError(f"GraphQL errors: {payload['errors']}")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise MarketDataError("GraphQL data is not an object")
    rows = data.get("poolMetrics") or []
    if not isinstance(rows, list):
        raise MarketDataError("poolMetrics is not a list")

    seen: Dict[str, PoolRecord] = {}
    for row in rows:
        if not isinstance(row, dict):
            raise MarketDataError(f"malformed poolMetrics row: {row!r}")
        addr = str(row.get("poolAddress") or "").strip()
        if not addr or addr.lower() in seen:
            continue
        ts = row.get("timestamp")
        seen[addr.lower()] = PoolRecord(
            pool_address=addr,
            tvl_usd=_float(row.get("tvlUSD"), "tvlUSD"),
            volume_24h=_float(row.get("volume24h"), "volume24h"),
            fee_apr=_float(row.get("feeAPR"), "feeAPR"),
            timestamp=_int(ts, "timestamp") if ts is not None else None,
        )
    return list(seen.values())


def parse_price_feeds(payload: Any) -> List[PriceFeed]:
    """Parse a Pyth Hermes `latest_price_feeds` response."""
    if not isinstance(payload, list):
        raise MarketDataError("price feed response is not a list")
    feeds: List[PriceFeed] = []
    for item in payload:
        if item is None:
            continue
        if not isinstance(item, dict):
            raise MarketDataError(f"malformed price feed entry: {item!r}")
        price = item.get("price") or {}
        if not isinstance(price, dict):
            raise MarketDataError(f"malformed price object: {price!r}")
        if price.get("price") is None:
            continue
        feed_id = str(item.get("id") or "")
        if feed_id and not feed_id.startswith("0x"):
            feed_id = "0x" + feed_id
        publish_time = price.get("publish_time")
        feeds.append(
            PriceFeed(
                feed_id=feed_id or "unknown",
                price=_float(price.get("price"), "price"),
                confidence=abs(_float(price.get("conf", 0), "conf")),
                exponent=_int(price.get("expo", 0), "expo"),
                publish_time=_int(publish_time, "publish_time") if publish_time is not None else None,
            )
        )
    return feeds


class PoolMetricsSource:
    """GraphQL client for the pool-metrics indexer."""

    def __init__(self, *, api_url: str, api_key: str = "", timeout_s: float = 10.0, session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.session = session if session is not None else requests.Session()

    def fetch(self) -> List[PoolRecord]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            res = self.session.post(
                self.api_url,
                json={"query": POOL_METRICS_QUERY},
                headers=headers,
                timeout=self.timeout_s,
            )
            res.raise_for_status()
            payload = res.json()
        except (requests.RequestException, ValueError) as e:
            raise MarketDataError(f"pool metrics request failed: {e}") from e
        return parse_pool_metrics(payload)


class PriceFeedSource:
    """Pyth Hermes price service client."""

    def __init__(self, *, api_url: str, feed_ids: Sequence[str], timeout_s: float = 10.0, session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.feed_ids = list(feed_ids)
        self.timeout_s = timeout_s
        self.session = session if session is not None else requests.Session()

    def fetch(self) -> List[PriceFeed]:
        try:
            res = self.session.get(
                f"{self.api_url}/api/latest_price_feeds",
                params={"ids[]": self.feed_ids},
                timeout=self.timeout_s,
            )
            res.raise_for_status()
            payload = res.json()
        except (requests.RequestException, ValueError) as e:
            raise MarketDataError(f"price feed request failed: {e}") from e
        return parse_price_feeds(payload)


def estimate_volatility(feeds: Sequence[PriceFeed], price_history: Dict[str, Sequence[float]]) -> float:
    """Cross-asset volatility estimate in [0, 1].

    Per feed: the larger of the scaled confidence-band ratio and the scaled
    realized volatility (population stdev of simple returns) of its recent
    prices. Feeds are averaged, result clamped.
    """
    per_feed: List[float] = []
    for feed in feeds:
        if feed.price == 0:
            continue
        band = abs(feed.confidence / feed.price) * CONFIDENCE_BAND_SCALE

        realized = 0.0
        prices = [p for p in price_history.get(feed.feed_id, ()) if p > 0]
        if len(prices) >= 3:
            returns = [(b - a) / a for a, b in zip(prices, prices[1:])]
            realized = statistics.pstdev(returns) * REALIZED_VOL_SCALE

        per_feed.append(max(band, realized))

    if not per_feed:
        return 0.0
    value = sum(per_feed) / len(per_feed)
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


def build_recommendations(
    pools: Dict[str, PoolMetrics], *, market_volatility: float, average_apr: float
) -> List[Recommendation]:
    recs: List[Recommendation] = []
    if market_volatility > HIGH_VOLATILITY:
        recs.append(
            Recommendation(
                type="risk_reduction",
                message="High volatility detected - suggest moving 20% from volatile pools to stable pools",
                priority="high",
                action="rebalance",
            )
        )
    if pools and average_apr < LOW_AVERAGE_APR:
        recs.append(
            Recommendation(
                type="yield_optimization",
                message="Low APR detected - suggest withdrawing and reallocating to higher-yield pools",
                priority="medium",
                action="rebalance",
            )
        )
    for addr, pool in pools.items():
        if pool.fee_apr < VERY_LOW_POOL_APR:
            recs.append(
                Recommendation(
                    type="pool_optimization",
                    message=f"Pool {addr[:8]}... has very low APR ({pool.fee_apr})",
                    priority="low",
                    action="monitor",
                    pool_address=addr,
                )
            )
    return recs


class MarketObserver:
    """Polls the sources and keeps a bounded rolling log of snapshots."""

    def __init__(
        self,
        *,
        pool_source: PoolMetricsSource,
        price_source: PriceFeedSource,
        pools: Optional[Sequence[str]] = None,
        history_size: int = 100,
        audit: Optional[AuditManager] = None,
    ):
        self.pool_source = pool_source
        self.price_source = price_source
        self.universe = {p.lower() for p in (pools or [])}
        self.audit = audit
        self._history: Deque[MarketSnapshot] = deque(maxlen=max(1, int(history_size)))
        self._prices: Dict[str, Deque[float]] = {}

    @classmethod
    def from_app_config(cls, app_config: AppConfig, *, audit: Optional[AuditManager] = None) -> "MarketObserver":
        cfg: ObserverConfig = app_config.observer
        return cls(
            pool_source=PoolMetricsSource(
                api_url=cfg.envio_api_url, api_key=cfg.envio_api_key, timeout_s=cfg.http_timeout_s
            ),
            price_source=PriceFeedSource(
                api_url=cfg.pyth_api_url, feed_ids=cfg.feed_ids, timeout_s=cfg.http_timeout_s
            ),
            pools=cfg.pools,
            history_size=cfg.history_size,
            audit=audit,
        )

    async def _fallback(self, source: str, error: Exception, ctx: AuditContext) -> None:
        if self.audit is not None:
            await self.audit.log(
                "market_data_fallback",
                {"source": source, "error": str(error)},
                ctx=ctx,
                level="warning",
            )

    async def _fetch_pools(self, ctx: AuditContext) -> Tuple[List[PoolRecord], DataSource]:
        try:
            return await asyncio.to_thread(self.pool_source.fetch), DataSource.live
        except MarketDataError as e:
            await self._fallback("pool_metrics", e, ctx)
            return fallback_pool_records(), DataSource.fallback

    async def _fetch_prices(self, ctx: AuditContext) -> Tuple[List[PriceFeed], DataSource]:
        try:
            return await asyncio.to_thread(self.price_source.fetch), DataSource.live
        except MarketDataError as e:
            await self._fallback("price_feeds", e, ctx)
            return fallback_price_feeds(), DataSource.fallback

    def _record_prices(self, feeds: Sequence[PriceFeed]) -> None:
        for feed in feeds:
            scaled = feed.price * (10.0 ** feed.exponent)
            self._prices.setdefault(feed.feed_id, deque(maxlen=PRICE_HISTORY_LEN)).append(scaled)

    def build_snapshot(
        self,
        records: Sequence[PoolRecord],
        feeds: Sequence[PriceFeed],
        *,
        pool_source: DataSource = DataSource.live,
        price_source: DataSource = DataSource.live,
        timestamp: Optional[int] = None,
    ) -> MarketSnapshot:
        pools: Dict[str, PoolMetrics] = {}
        for r in records:
            if self.universe and r.pool_address.lower() not in self.universe:
                continue
            pools[r.pool_address] = PoolMetrics(
                tvl_usd=r.tvl_usd, volume_24h=r.volume_24h, fee_apr=r.fee_apr, timestamp=r.timestamp
            )

        self._record_prices(feeds)
        volatility = estimate_volatility(feeds, self._prices)
        average_apr = (sum(p.fee_apr for p in pools.values()) / len(pools)) if pools else 0.0
        return MarketSnapshot(
            timestamp=timestamp if timestamp is not None else now_ms(),
            pools=pools,
            market_volatility=volatility,
            pool_source=pool_source,
            price_source=price_source,
            recommendations=build_recommendations(
                pools, market_volatility=volatility, average_apr=average_apr
            ),
        )

    async def observe(self, *, cycle_id: Optional[str] = None) -> MarketSnapshot:
        """Fetch both sources, build a snapshot, append it to the rolling log."""
        ctx = AuditContext(cycle_id=cycle_id, component="observer")
        records, pool_src = await self._fetch_pools(ctx)
        feeds, price_src = await self._fetch_prices(ctx)
        try:
            snapshot = self.build_snapshot(records, feeds, pool_source=pool_src, price_source=price_src)
        except ValidationError as e:
            raise ObservationError(f"invalid market data: {e}") from e

        self._history.append(snapshot)
        if self.audit is not None:
            await self.audit.log(
                "market_snapshot_ready",
                {
                    "timestamp": snapshot.timestamp,
                    "pools": len(snapshot.pools),
                    "market_volatility": snapshot.market_volatility,
                    "average_apr": snapshot.average_apr,
                    "total_tvl": snapshot.total_tvl,
                    "pool_source": snapshot.pool_source.value,
                    "price_source": snapshot.price_source.value,
                },
                ctx=ctx,
            )
        return snapshot

    def latest(self, count: int = 10) -> List[MarketSnapshot]:
        """Newest-first snapshots from the rolling log."""
        items = list(self._history)
        items.reverse()
        return items[: max(0, int(count))]

    def __len__(self) -> int:
        return len(self._history)


__all__ = [
    "MarketDataError",
    "MarketObserver",
    "ObservationError",
    "PoolMetricsSource",
    "PoolRecord",
    "PriceFeedSource",
    "build_recommendations",
    "estimate_volatility",
    "fallback_pool_records",
    "fallback_price_feeds",
    "parse_pool_metrics",
    "parse_price_feeds",
]
