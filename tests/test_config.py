import pytest

from liquidai.config import DEFAULT_POOLS, ConfigError, load_config, validate_config

_KEYS = (
    "LEDGER_MODE",
    "RPC_URL",
    "SEPOLIA_RPC_URL",
    "LIQUIDITY_VAULT_ADDRESS",
    "AGENT_PRIVATE_KEY",
    "PRIVATE_KEY",
    "OWNER_PRIVATE_KEY",
    "AUTO_EXECUTE",
    "MIN_CONFIDENCE_THRESHOLD",
    "EXECUTION_INTERVAL_S",
    "EXECUTION_INTERVAL",
    "MARKET_POOLS",
    "LEDGER_START_BLOCK",
    "LOG_CHUNK_BLOCKS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    cfg = load_config()
    assert cfg.ledger.mode == "simulated"
    assert cfg.execution.auto_execute is False
    assert cfg.execution.min_confidence_threshold == 0.7
    assert cfg.scheduler.interval_s == 300
    assert cfg.observer.pools == DEFAULT_POOLS
    validate_config(cfg)


def test_legacy_millisecond_interval(clean_env):
    clean_env.setenv("EXECUTION_INTERVAL", "60000")
    assert load_config().scheduler.interval_s == 60
    clean_env.setenv("EXECUTION_INTERVAL_S", "15")
    assert load_config().scheduler.interval_s == 15


def test_private_key_fallback_names(clean_env):
    clean_env.setenv("PRIVATE_KEY", "0xabc")
    clean_env.setenv("SEPOLIA_RPC_URL", "https://rpc.example")
    cfg = load_config()
    assert cfg.ledger.agent_private_key == "0xabc"
    assert cfg.ledger.rpc_url == "https://rpc.example"


def test_web3_mode_requires_contract_and_keys(clean_env):
    clean_env.setenv("LEDGER_MODE", "web3")
    clean_env.setenv("AUTO_EXECUTE", "true")
    with pytest.raises(ConfigError) as excinfo:
        validate_config(load_config())
    msg = str(excinfo.value)
    assert "LIQUIDITY_VAULT_ADDRESS" in msg
    assert "AGENT_PRIVATE_KEY" in msg
    assert "OWNER_PRIVATE_KEY" in msg


def test_rejects_unknown_mode_and_bad_threshold(clean_env):
    clean_env.setenv("LEDGER_MODE", "mainnet")
    clean_env.setenv("MIN_CONFIDENCE_THRESHOLD", "1.5")
    with pytest.raises(ConfigError) as excinfo:
        validate_config(load_config())
    assert "LEDGER_MODE" in str(excinfo.value)
    assert "MIN_CONFIDENCE_THRESHOLD" in str(excinfo.value)


def test_pool_universe_from_env(clean_env):
    clean_env.setenv("MARKET_POOLS", f"{DEFAULT_POOLS[0]}, {DEFAULT_POOLS[1]} ,")
    assert load_config().observer.pools == DEFAULT_POOLS[:2]


def test_event_scan_settings(clean_env):
    cfg = load_config()
    assert cfg.ledger.start_block is None
    assert cfg.ledger.log_chunk_blocks == 2000

    clean_env.setenv("LEDGER_START_BLOCK", "4200000")
    clean_env.setenv("LOG_CHUNK_BLOCKS", "500")
    cfg = load_config()
    assert cfg.ledger.start_block == 4_200_000
    assert cfg.ledger.log_chunk_blocks == 500
    validate_config(cfg)

    clean_env.setenv("LEDGER_START_BLOCK", "-1")
    clean_env.setenv("LOG_CHUNK_BLOCKS", "0")
    with pytest.raises(ConfigError) as excinfo:
        validate_config(load_config())
    assert "LOG_CHUNK_BLOCKS" in str(excinfo.value)
    assert "LEDGER_START_BLOCK" in str(excinfo.value)
