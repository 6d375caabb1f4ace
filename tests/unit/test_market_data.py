"""
Unit tests for MarketData: retry, cooldown after repeated failures, request spacing.
"""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from cloudtrader.config.config import DataConfig
from cloudtrader.data.market_data import MarketData
from cloudtrader.domain.models import Ticker
from cloudtrader.exceptions import DataAcquisitionError, DataError
from tests.helpers import make_candles


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_source():
    source = MagicMock()
    source.fetch_candles = AsyncMock(return_value=make_candles([100.0] * 5))
    source.fetch_ticker = AsyncMock(return_value=Ticker(symbol="BTC/USDT", last=Decimal("100")))
    return source


@pytest.mark.asyncio
async def test_retries_transient_errors_then_succeeds():
    source = make_source()
    source.fetch_candles.side_effect = [
        DataAcquisitionError("timeout"),
        DataAcquisitionError("timeout"),
        make_candles([100.0] * 5),
    ]
    sleeps = Sleeps()
    data = MarketData(source, DataConfig(retry_attempts=3, retry_delay_seconds=1, request_delay_ms=0), sleep=sleeps)

    candles = await data.fetch_candles("BTC/USDT", "15m", 5)

    assert len(candles) == 5
    assert source.fetch_candles.call_count == 3
    # Two backoff waits, the second at least double the first
    assert len(sleeps.calls) == 2
    assert sleeps.calls[1] >= 2 * sleeps.calls[0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise():
    source = make_source()
    source.fetch_candles.side_effect = DataAcquisitionError("down")
    data = MarketData(source, DataConfig(retry_attempts=2, retry_delay_seconds=0, request_delay_ms=0), sleep=Sleeps())

    with pytest.raises(DataAcquisitionError):
        await data.fetch_candles("BTC/USDT", "15m", 5)
    assert source.fetch_candles.call_count == 2


@pytest.mark.asyncio
async def test_data_error_is_not_retried():
    source = make_source()
    source.fetch_ticker.side_effect = DataError("bad symbol")
    data = MarketData(source, DataConfig(retry_attempts=5, request_delay_ms=0), sleep=Sleeps())

    with pytest.raises(DataError):
        await data.fetch_ticker("NOPE/USDT")
    assert source.fetch_ticker.call_count == 1


@pytest.mark.asyncio
async def test_cooldown_after_k_failures():
    """After K consecutive failures, fetches fail fast without calling the source."""
    source = make_source()
    source.fetch_candles.side_effect = DataAcquisitionError("timeout")
    config = DataConfig(retry_attempts=1, failure_cooldown_after=2, cooldown_minutes=60, request_delay_ms=0)
    data = MarketData(source, config, sleep=Sleeps())

    for _ in range(2):
        with pytest.raises(DataAcquisitionError):
            await data.fetch_candles("BTC/USDT", "15m", 5)

    assert data.in_cooldown("BTC/USDT")
    with pytest.raises(DataAcquisitionError, match="cooldown"):
        await data.fetch_candles("BTC/USDT", "15m", 5)
    assert source.fetch_candles.call_count == 2

    # Other symbols are unaffected
    source.fetch_candles.side_effect = None
    assert await data.fetch_candles("ETH/USDT", "15m", 5)


@pytest.mark.asyncio
async def test_min_delay_between_requests():
    source = make_source()
    sleeps = Sleeps()
    clock = MagicMock(return_value=10.0)  # time does not advance between calls
    data = MarketData(source, DataConfig(request_delay_ms=250), sleep=sleeps, monotonic=clock)

    await data.fetch_ticker("BTC/USDT")
    await data.fetch_ticker("BTC/USDT")

    assert sleeps.calls == [0.25]


@pytest.mark.asyncio
async def test_fetch_multi_timeframe():
    source = make_source()
    data = MarketData(source, DataConfig(request_delay_ms=0), sleep=Sleeps())

    result = await data.fetch_multi_timeframe("BTC/USDT", ["15m", "1h"], 5)

    assert set(result) == {"15m", "1h"}
    timeframes = [c.args[1] for c in source.fetch_candles.call_args_list]
    assert timeframes == ["15m", "1h"]
