"""
Read-only ccxt client for spot market data.

Handles:
- Lazy initialization of the async ccxt exchange
- Rate limiting via ccxt's built-in throttle (enableRateLimit)
- Conversion of OHLCV rows and tickers into domain objects
- Mapping ccxt errors onto the engine's exception hierarchy

This client never places orders.
"""
import ccxt
import ccxt.async_support as ccxt_async
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from cloudtrader.constants import (
    DEFAULT_API_TIMEOUT_MS,
    OHLCV_FETCH_TIMEOUT,
    TICKER_FETCH_TIMEOUT,
)
from cloudtrader.domain.models import Candle, Ticker
from cloudtrader.exceptions import APIError, DataAcquisitionError, DataError, RateLimitError, ValidationError
from cloudtrader.monitoring.logger import get_logger
from cloudtrader.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _row_to_candle(symbol: str, timeframe: str, row: list) -> Candle:
    timestamp_ms, open_price, high, low, close, volume = row[:6]
    return Candle(
        timestamp=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc),
        symbol=symbol,
        timeframe=timeframe,
        open=Decimal(str(open_price)),
        high=Decimal(str(high)),
        low=Decimal(str(low)),
        close=Decimal(str(close)),
        volume=Decimal(str(volume or 0)),
    )


def map_ccxt_error(exc: Exception, context: str) -> Exception:
    """Translate a ccxt exception into the engine's taxonomy."""
    if isinstance(exc, ccxt.BadSymbol):
        return DataError(f"{context}: {exc}")
    if isinstance(exc, (ccxt.DDoSProtection, ccxt.RateLimitExceeded)):
        return RateLimitError(f"{context}: {exc}")
    if isinstance(exc, (ccxt.RequestTimeout, ccxt.ExchangeNotAvailable, ccxt.NetworkError)):
        return DataAcquisitionError(f"{context}: {exc}")
    if isinstance(exc, asyncio.TimeoutError):
        return DataAcquisitionError(f"{context}: timed out")
    if isinstance(exc, ccxt.ExchangeError):
        return APIError(f"{context}: {exc}")
    return exc


class ExchangeClient:
    """
    Async ccxt wrapper exposing fetch_candles / fetch_ticker.
    """

    def __init__(
        self,
        exchange_name: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        enable_rate_limit: bool = True,
        timeout_ms: int = DEFAULT_API_TIMEOUT_MS,
    ):
        if not hasattr(ccxt_async, exchange_name):
            raise ValueError(f"Unknown ccxt exchange: {exchange_name}")
        self.exchange_name = exchange_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.enable_rate_limit = enable_rate_limit
        self.timeout_ms = timeout_ms
        self.exchange = None
        self._init_lock = asyncio.Lock()

    async def initialize(self):
        """
        Lazy initialization of the CCXT exchange.
        MUST be called inside the running event loop.
        """
        async with self._init_lock:
            if self.exchange:
                return
            params = {
                'enableRateLimit': self.enable_rate_limit,
                'timeout': self.timeout_ms,
            }
            if self.api_key and self.api_secret:
                params['apiKey'] = self.api_key
                params['secret'] = self.api_secret
            self.exchange = getattr(ccxt_async, self.exchange_name)(params)
            await self._load_markets()
            logger.info("Exchange client initialized", exchange=self.exchange_name)

    @retry_on_transient_errors(max_retries=2, base_delay=1.0)
    async def _load_markets(self):
        try:
            await self.exchange.load_markets()
        except Exception as e:
            raise map_ccxt_error(e, "load_markets") from e

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        """
        Fetch OHLCV data.

        Args:
            symbol: Symbol (e.g., "BTC/USDT")
            timeframe: Timeframe (e.g., "15m", "1h", "4h", "1d")
            limit: Maximum number of candles

        Returns:
            List of Candle objects, oldest first
        """
        if not self.exchange:
            await self.initialize()

        try:
            ohlcv = await asyncio.wait_for(
                self.exchange.fetch_ohlcv(symbol, timeframe, limit=limit),
                timeout=OHLCV_FETCH_TIMEOUT
            )
        except Exception as e:
            logger.error(
                "Failed to fetch OHLCV",
                symbol=symbol,
                timeframe=timeframe,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise map_ccxt_error(e, f"fetch_ohlcv {symbol} {timeframe}") from e

        candles = []
        for row in ohlcv:
            try:
                candles.append(_row_to_candle(symbol, timeframe, row))
            except (ValueError, TypeError, ArithmeticError) as e:
                raise ValidationError(f"Malformed OHLCV row for {symbol} {timeframe}: {row!r}") from e

        logger.debug("Fetched OHLCV", symbol=symbol, timeframe=timeframe, count=len(candles))
        return candles

    async def fetch_ticker(self, symbol: str) -> Ticker:
        """Get current ticker information."""
        if not self.exchange:
            await self.initialize()

        try:
            raw = await asyncio.wait_for(self.exchange.fetch_ticker(symbol), timeout=TICKER_FETCH_TIMEOUT)
        except Exception as e:
            logger.error(f"Failed to fetch ticker for {symbol}", error=str(e))
            raise map_ccxt_error(e, f"fetch_ticker {symbol}") from e

        last = raw.get("last") or raw.get("close")
        if last is None:
            raise ValidationError(f"Ticker for {symbol} has no last price")
        return Ticker(
            symbol=symbol,
            last=Decimal(str(last)),
            base_volume=_to_decimal(raw.get("baseVolume")),
            quote_volume=_to_decimal(raw.get("quoteVolume")),
        )

    async def close(self):
        """Cleanup resources."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None
