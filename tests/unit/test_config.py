"""
Configuration loading and validation.
"""
import pytest

from cloudtrader.config.config import Config, StrategyConfig, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("ENVIRONMENT", "BINANCE_API_KEY", "BINANCE_API_SECRET"):
        monkeypatch.delenv(var, raising=False)


def test_default_config_loads():
    config = load_config()

    assert config.exchange.name == "binance"
    assert len(config.exchange.symbols) == 15
    assert config.exchange.api_key is None
    assert config.risk.initial_capital == 1000
    assert config.risk.risk_percentage == 3
    assert config.risk.max_drawdown_pct == 20
    assert config.strategy.ichimoku.span_period == 52
    assert config.strategy.min_timeframe_votes == 2
    assert config.engine.cycle_interval_seconds == 60
    assert config.dashboard.port == 3000
    assert config.environment == "paper"


def test_env_expansion_and_environment_override(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(
        "exchange:\n"
        "  api_key: ${BINANCE_API_KEY}\n"
        "  api_secret: ${BINANCE_API_SECRET}\n"
        "risk:\n"
        "  max_positions: 3\n"
    )
    monkeypatch.setenv("BINANCE_API_KEY", "key-123")
    monkeypatch.setenv("ENVIRONMENT", "dev")

    config = load_config(path)

    assert config.exchange.api_key == "key-123"
    assert config.exchange.api_secret is None
    assert config.risk.max_positions == 3
    assert config.environment == "dev"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_timeframe_roles_must_be_configured():
    with pytest.raises(ValueError):
        StrategyConfig(timeframes=["1h", "4h"], execution_timeframe="15m")


def test_symbols_must_match_quote(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("exchange:\n  symbols: [BTC/EUR]\n")
    with pytest.raises(ValueError):
        load_config(path)


def test_candle_limit_must_cover_ichimoku():
    config = Config(strategy=StrategyConfig(candle_limit=60))
    with pytest.raises(ValueError, match="Ichimoku"):
        config.validate_config()
