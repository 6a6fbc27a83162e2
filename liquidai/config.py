"""Central configuration loader.

Reads env vars and exposes typed, frozen config objects with defaults.
Only wiring, thresholds and cadence live here; rule constants stay in
`liquidai.reasoning.rules`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional


DEFAULT_POOLS = [
    "0x1234567890123456789012345678901234567890",
    "0x2345678901234567890123456789012345678901",
    "0x3456789012345678901234567890123456789012",
]

DEFAULT_FEED_IDS = [
    # ETH/USD
    "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    # BTC/USD
    "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
]

LEDGER_MODES = ("simulated", "web3")


class ConfigError(RuntimeError):
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return int(val)


def _env_optional_int(name: str) -> Optional[int]:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return None
    return int(val)


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return float(val)


def _env_list(name: str, default: List[str], sep: str = ",") -> List[str]:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return [v.strip() for v in val.split(sep) if v.strip()]


def _env_str(name: str, *fallbacks: str) -> Optional[str]:
    for key in (name, *fallbacks):
        val = os.getenv(key)
        if val is not None and val.strip() != "":
            return val.strip()
    return None


@dataclass(frozen=True)
class ObserverConfig:
    envio_api_url: str
    envio_api_key: str
    pyth_api_url: str
    feed_ids: List[str]
    pools: List[str]
    http_timeout_s: float = 10.0
    history_size: int = 100
    observe_interval_s: int = 30


@dataclass(frozen=True)
class LedgerConfig:
    mode: str
    rpc_url: str
    contract_address: Optional[str]
    agent_private_key: Optional[str]
    owner_private_key: Optional[str]
    confirmation_timeout_s: float = 120.0
    start_block: Optional[int] = None  # None = follow from the current head
    log_chunk_blocks: int = 2000


@dataclass(frozen=True)
class ExecutionConfig:
    auto_execute: bool = False
    min_confidence_threshold: float = 0.7


@dataclass(frozen=True)
class SchedulerConfig:
    interval_s: int = 300
    initial_delay_s: int = 10
    history_limit: int = 500


@dataclass(frozen=True)
class AppConfig:
    observer: ObserverConfig
    ledger: LedgerConfig
    execution: ExecutionConfig
    scheduler: SchedulerConfig
    mongodb_uri: Optional[str]


def _interval_seconds() -> int:
    if os.getenv("EXECUTION_INTERVAL_S"):
        return _env_int("EXECUTION_INTERVAL_S", 300)
    # Legacy millisecond variable.
    if os.getenv("EXECUTION_INTERVAL"):
        return max(1, _env_int("EXECUTION_INTERVAL", 300_000) // 1000)
    return 300


def load_config() -> AppConfig:
    """Load configuration from environment."""
    observer = ObserverConfig(
        envio_api_url=os.getenv("ENVIO_API_URL", "https://api.envio.dev/graphql"),
        envio_api_key=os.getenv("ENVIO_API_KEY", ""),
        pyth_api_url=os.getenv("PYTH_PRICE_SERVICE_URL", "https://hermes.pyth.network"),
        feed_ids=_env_list("PYTH_FEED_IDS", list(DEFAULT_FEED_IDS)),
        pools=_env_list("MARKET_POOLS", list(DEFAULT_POOLS)),
        http_timeout_s=_env_float("MARKET_HTTP_TIMEOUT_S", 10.0),
        history_size=_env_int("OBSERVATION_HISTORY_SIZE", 100),
        observe_interval_s=_env_int("OBSERVE_INTERVAL_S", 30),
    )

    ledger = LedgerConfig(
        mode=(os.getenv("LEDGER_MODE") or "simulated").strip().lower(),
        rpc_url=_env_str("RPC_URL", "SEPOLIA_RPC_URL") or "http://localhost:8545",
        contract_address=_env_str("LIQUIDITY_VAULT_ADDRESS"),
        agent_private_key=_env_str("AGENT_PRIVATE_KEY", "PRIVATE_KEY"),
        owner_private_key=_env_str("OWNER_PRIVATE_KEY"),
        confirmation_timeout_s=_env_float("TX_CONFIRMATION_TIMEOUT_S", 120.0),
        start_block=_env_optional_int("LEDGER_START_BLOCK"),
        log_chunk_blocks=_env_int("LOG_CHUNK_BLOCKS", 2000),
    )

    execution = ExecutionConfig(
        auto_execute=_env_bool("AUTO_EXECUTE", False),
        min_confidence_threshold=_env_float("MIN_CONFIDENCE_THRESHOLD", 0.7),
    )

    scheduler = SchedulerConfig(
        interval_s=_interval_seconds(),
        initial_delay_s=_env_int("INITIAL_DELAY_S", 10),
        history_limit=_env_int("HISTORY_LIMIT", 500),
    )

    mongodb_uri = os.getenv("MONGODB_URI") or os.getenv("MONGODB_URL")

    return AppConfig(
        observer=observer,
        ledger=ledger,
        execution=execution,
        scheduler=scheduler,
        mongodb_uri=mongodb_uri,
    )


def validate_config(cfg: AppConfig) -> None:
    """Raise ConfigError when required settings for the chosen mode are missing."""
    problems: List[str] = []
    if cfg.ledger.mode not in LEDGER_MODES:
        problems.append(f"LEDGER_MODE must be one of {', '.join(LEDGER_MODES)} (got {cfg.ledger.mode!r})")

    if cfg.ledger.mode == "web3":
        if not cfg.ledger.rpc_url:
            problems.append("RPC_URL")
        if not cfg.ledger.contract_address:
            problems.append("LIQUIDITY_VAULT_ADDRESS")
        if not cfg.ledger.agent_private_key:
            problems.append("AGENT_PRIVATE_KEY")
        if cfg.execution.auto_execute and not cfg.ledger.owner_private_key:
            problems.append("OWNER_PRIVATE_KEY (required when AUTO_EXECUTE=true)")

    if not 0.0 <= cfg.execution.min_confidence_threshold <= 1.0:
        problems.append("MIN_CONFIDENCE_THRESHOLD must be within [0, 1]")
    if cfg.scheduler.interval_s <= 0:
        problems.append("EXECUTION_INTERVAL_S must be positive")
    if cfg.ledger.log_chunk_blocks <= 0:
        problems.append("LOG_CHUNK_BLOCKS must be positive")
    if cfg.ledger.start_block is not None and cfg.ledger.start_block < 0:
        problems.append("LEDGER_START_BLOCK must not be negative")
    if cfg.observer.history_size <= 0:
        problems.append("OBSERVATION_HISTORY_SIZE must be positive")

    if problems:
        raise ConfigError("Missing or invalid configuration: " + "; ".join(problems))


__all__ = [
    "AppConfig",
    "ConfigError",
    "ExecutionConfig",
    "LedgerConfig",
    "ObserverConfig",
    "SchedulerConfig",
    "load_config",
    "validate_config",
]
