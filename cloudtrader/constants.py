"""
System-wide constants for the trading engine.

Centralizes magic numbers used across modules.
"""
from decimal import Decimal

# Strategy tags (attribution in the ledger)
STRATEGY_ICHIMOKU = "ichimoku"
STRATEGY_BREAKOUT = "breakout"

# Breakout detector
BREAKOUT_CONFIDENCE = 0.8
NO_BREAKOUT_CONFIDENCE = 0.3

# Timeouts
DEFAULT_API_TIMEOUT_MS = 30000
OHLCV_FETCH_TIMEOUT = 10.0  # seconds
TICKER_FETCH_TIMEOUT = 5.0  # seconds

# Bookkeeping
ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
DUST_QUANTITY = Decimal("1e-12")

# Transaction history kept in memory for the status surface
HISTORY_PAGE_DEFAULT = 50
