"""
Custom exception hierarchy for the paper trading engine.

Hierarchy:

    TradingSystemError (base)
    ├── OperationalError   : transient/retryable (exchange, network, timeouts)
    │   ├── APIError       : exchange returned an error
    │   │   └── RateLimitError
    │   └── DataAcquisitionError
    ├── DataError          : bad data, skip symbol, don't halt
    │   └── ValidationError  : malformed candle or ticker from the exchange
    └── InvariantError     : bookkeeping violation, halt immediately
        └── DrawdownHaltError

Rules:
    - OperationalError: retry with backoff; if exhausted, skip the symbol for this cycle
    - DataError: catch, log, skip this symbol, continue loop
    - InvariantError: never swallowed by the per-symbol handler
    - Anything else: recorded against the symbol with a traceback, loop continues
"""


class TradingSystemError(Exception):
    """Base exception for all trading system errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradingSystemError):
    """Transient/retryable error: exchange API, network, timeouts.

    Treatment: catch, log, retry with backoff, continue to next cycle.
    """
    pass


class APIError(OperationalError):
    """API-specific operational error (exchange returned error)."""
    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""
    pass


class DataAcquisitionError(OperationalError):
    """Raised when data acquisition fails (network/API layer)."""
    pass


# ============ DATA (bad input, skip symbol) ============

class DataError(TradingSystemError):
    """Bad data: unknown symbol, malformed candles, invalid ticker.

    Treatment: catch, log, skip this symbol, continue loop.
    """
    pass


class ValidationError(DataError):
    """Raised when exchange data fails validation (inconsistent OHLC, missing price)."""
    pass


# ============ INVARIANT (bookkeeping violation, halt) ============

class InvariantError(TradingSystemError):
    """Bookkeeping invariant violation. Halt immediately.

    This should never be caught and silently continued.
    """
    pass


class DrawdownHaltError(InvariantError):
    """Raised when starting an engine whose drawdown latch is still set."""
    pass
