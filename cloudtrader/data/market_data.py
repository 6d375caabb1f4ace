"""
Resilient market data access with retry, backoff, per-symbol cooldown and rate limiting.

Wraps any MarketDataSource (normally ExchangeClient) with:
- Retry with exponential backoff on transient errors (OperationalError)
- Per-symbol cooldown after K consecutive failures (fetches fail fast during cooldown)
- Minimum delay between requests
"""
import asyncio
import time
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Sequence

from cloudtrader.config.config import DataConfig
from cloudtrader.domain.models import Candle, Ticker
from cloudtrader.domain.protocols import Clock, MarketDataSource, Sleeper
from cloudtrader.exceptions import DataAcquisitionError, DataError, OperationalError
from cloudtrader.monitoring.logger import get_logger
from cloudtrader.utils.retry import call_with_retry

logger = get_logger(__name__)


class MarketData:
    """
    MarketDataSource decorator adding retry, cooldown and request spacing.
    """

    def __init__(
        self,
        source: MarketDataSource,
        config: Optional[DataConfig] = None,
        *,
        sleep: Sleeper = asyncio.sleep,
        monotonic: Clock = time.monotonic,
    ):
        self.source = source
        self.config = config or DataConfig()
        self._sleep = sleep
        self._monotonic = monotonic
        self.min_delay_ms = self.config.request_delay_ms
        self.failure_disable_after = self.config.failure_cooldown_after
        self.cooldown_minutes = self.config.cooldown_minutes

        self._spacing_lock = asyncio.Lock()
        self._last_request_time: Optional[float] = None
        self._failure_count: Dict[str, int] = {}
        self._cooldown_until: Dict[str, datetime] = {}

    def in_cooldown(self, symbol: str) -> bool:
        until = self._cooldown_until.get(symbol)
        if not until:
            return False
        if datetime.now(timezone.utc) < until:
            return True
        self._cooldown_until.pop(symbol, None)
        self._failure_count[symbol] = 0
        return False

    def _record_failure(self, symbol: str) -> None:
        self._failure_count[symbol] = self._failure_count.get(symbol, 0) + 1
        if self._failure_count[symbol] >= self.failure_disable_after:
            until = datetime.now(timezone.utc) + timedelta(minutes=self.cooldown_minutes)
            self._cooldown_until[symbol] = until
            logger.warning(
                "Market data cooldown started",
                symbol=symbol,
                failures=self._failure_count[symbol],
                cooldown_minutes=self.cooldown_minutes,
            )

    def _record_success(self, symbol: str) -> None:
        self._failure_count[symbol] = 0

    async def _space_requests(self) -> None:
        async with self._spacing_lock:
            now = self._monotonic()
            if self._last_request_time is not None:
                elapsed_ms = (now - self._last_request_time) * 1000
                if elapsed_ms < self.min_delay_ms:
                    await self._sleep((self.min_delay_ms - elapsed_ms) / 1000.0)
            self._last_request_time = self._monotonic()

    async def _guarded(self, symbol: str, func, *args):
        if self.in_cooldown(symbol):
            raise DataAcquisitionError(f"{symbol} is in cooldown after repeated failures")

        async def attempt():
            await self._space_requests()
            return await func(*args)

        try:
            result = await call_with_retry(
                attempt,
                max_retries=self.config.retry_attempts - 1,
                base_delay=self.config.retry_delay_seconds,
                max_backoff=self.config.max_retry_delay_seconds,
                transient_errors=(OperationalError,),
                sleep=self._sleep,
            )
        except (OperationalError, DataError):
            self._record_failure(symbol)
            raise
        self._record_success(symbol)
        return result

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        candles = await self._guarded(symbol, self.source.fetch_candles, symbol, timeframe, limit)
        return list(candles or [])

    async def fetch_ticker(self, symbol: str) -> Ticker:
        return await self._guarded(symbol, self.source.fetch_ticker, symbol)

    async def fetch_multi_timeframe(
        self, symbol: str, timeframes: Sequence[str], limit: int
    ) -> Dict[str, List[Candle]]:
        """Candles for every timeframe. Any exhausted fetch aborts the whole symbol."""
        result: Dict[str, List[Candle]] = {}
        for timeframe in timeframes:
            result[timeframe] = await self.fetch_candles(symbol, timeframe, limit)
        return result

    async def close(self) -> None:
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()
