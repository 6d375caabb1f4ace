"""
Pytest configuration and shared fixtures.
"""
import pytest

from cloudtrader.config.config import (
    Config,
    DataConfig,
    EngineConfig,
    ExchangeConfig,
    MonitoringConfig,
    StorageConfig,
)
from tests.helpers import FakeMarketData, StubIndicators


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def config(tmp_path) -> Config:
    """Two-symbol config with fast retries and all files under tmp_path."""
    return Config(
        exchange=ExchangeConfig(symbols=["BTC/USDT", "ETH/USDT"]),
        data=DataConfig(retry_attempts=2, retry_delay_seconds=0, request_delay_ms=0),
        engine=EngineConfig(drawdown_state_path=str(tmp_path / "drawdown_state.json")),
        storage=StorageConfig(
            transaction_log_path=str(tmp_path / "transactions.jsonl"),
            results_csv_path=str(tmp_path / "results.csv"),
        ),
        monitoring=MonitoringConfig(log_file=None),
    )


@pytest.fixture
def market_data() -> FakeMarketData:
    return FakeMarketData({"BTC/USDT": 100.0, "ETH/USDT": 100.0})


@pytest.fixture
def stub_indicators(monkeypatch):
    StubIndicators.configure()
    monkeypatch.setattr("cloudtrader.live.engine.Indicators", StubIndicators)
    return StubIndicators
