"""
Test doubles and builders shared across unit tests.
"""
import asyncio
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from cloudtrader.domain.models import Candle, CloudPoint, Ticker


def make_candles(
    closes: Sequence[float],
    symbol: str = "BTC/USDT",
    timeframe: str = "15m",
    spread: float = 0.5,
) -> List[Candle]:
    """Candles whose open is the previous close and whose wicks extend `spread` beyond the body."""
    candles = []
    base_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
    prev = closes[0]
    for i, close in enumerate(closes):
        open_price = prev
        candles.append(
            Candle(
                timestamp=base_time + timedelta(minutes=15 * i),
                symbol=symbol,
                timeframe=timeframe,
                open=Decimal(str(open_price)),
                high=Decimal(str(max(open_price, close) + spread)),
                low=Decimal(str(min(open_price, close) - spread)),
                close=Decimal(str(close)),
                volume=Decimal("100"),
            )
        )
        prev = close
    return candles


class FakeMarketData:
    """
    In-memory market data: flat candles at a settable price per symbol.

    `closes[symbol]` replaces the flat series with explicit closes. With
    `yield_on_ticker` set, fetch_ticker suspends once so concurrent symbol
    tasks interleave between their checks and their entries.
    """

    def __init__(self, prices: Dict[str, float], quote_volume: float = 1_000_000.0):
        self.prices = dict(prices)
        self.ticker_prices: Dict[str, float] = {}
        self.closes: Dict[str, List[float]] = {}
        self.yield_on_ticker = False
        self.quote_volume = quote_volume
        self.errors: Dict[str, Exception] = {}
        self.multi_calls: List[str] = []
        self.ticker_calls: List[str] = []
        self.closed = False

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol] = price

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        if symbol in self.errors:
            raise self.errors[symbol]
        closes = self.closes.get(symbol) or [self.prices[symbol]] * limit
        return make_candles(closes[-limit:], symbol=symbol, timeframe=timeframe)

    async def fetch_multi_timeframe(self, symbol: str, timeframes, limit: int) -> Dict[str, List[Candle]]:
        self.multi_calls.append(symbol)
        return {tf: await self.fetch_candles(symbol, tf, limit) for tf in timeframes}

    async def fetch_ticker(self, symbol: str) -> Ticker:
        self.ticker_calls.append(symbol)
        if self.yield_on_ticker:
            await asyncio.sleep(0)
        if symbol in self.errors:
            raise self.errors[symbol]
        last = self.ticker_prices.get(symbol, self.prices[symbol])
        return Ticker(symbol=symbol, last=Decimal(str(last)), quote_volume=Decimal(str(self.quote_volume)))

    async def close(self) -> None:
        self.closed = True


class StubIndicators:
    """Deterministic replacement for Indicators in engine tests."""

    atr_values: List[Decimal] = [Decimal("2")]
    adx_values: List[Decimal] = [Decimal("30")]
    cloud: Optional[List[CloudPoint]] = [
        CloudPoint(conversion=Decimal("99"), base=Decimal("98"), span_a=Decimal("95"), span_b=Decimal("94"))
    ]

    @classmethod
    def configure(
        cls,
        atr: Optional[str] = "2",
        adx: Optional[str] = "30",
        cloud: Optional[Tuple[str, str, str, str]] = ("99", "98", "95", "94"),
    ) -> None:
        cls.atr_values = [Decimal(atr)] if atr is not None else []
        cls.adx_values = [Decimal(adx)] if adx is not None else []
        cls.cloud = [CloudPoint(*(Decimal(v) for v in cloud))] if cloud is not None else None

    @classmethod
    def ichimoku(cls, candles, params=None):
        return cls.cloud

    @classmethod
    def atr(cls, candles, period=14):
        return cls.atr_values

    @classmethod
    def adx(cls, candles, period=14):
        return cls.adx_values
