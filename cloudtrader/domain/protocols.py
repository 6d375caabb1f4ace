"""
Domain protocols (interfaces) for dependency inversion.

The engine depends on these abstractions rather than on ccxt, the file
system or the wall clock, so tests can substitute in-memory fakes.
"""
from typing import Awaitable, Callable, List, Protocol, runtime_checkable

from cloudtrader.domain.models import Candle, Ticker, Transaction


@runtime_checkable
class MarketDataSource(Protocol):
    """Candle and ticker source. Transient failures surface as OperationalError."""

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]: ...

    async def fetch_ticker(self, symbol: str) -> Ticker: ...


@runtime_checkable
class TransactionSink(Protocol):
    """
    Durable side channel for ledger events.

    Implemented by cloudtrader.storage.transaction_log.TransactionLog.
    Must never raise into the decision path.
    """

    def append(self, transaction: Transaction) -> None: ...


class NullTransactionSink:
    """TransactionSink that discards everything (tests, persistence disabled)."""

    def append(self, transaction: Transaction) -> None:
        pass


Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]
