"""
Domain models for the paper trading engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all prices, quantities
and balances are Decimals.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union, Dict, Any


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"


class PositionPhase(str, Enum):
    """
    Per-asset lifecycle.

        FLAT → LONG_OPEN → LONG_PARTIAL → FLAT
        FLAT → SHORT_OPEN → SHORT_PARTIAL → FLAT
    """
    FLAT = "flat"
    LONG_OPEN = "long_open"
    LONG_PARTIAL = "long_partial"
    SHORT_OPEN = "short_open"
    SHORT_PARTIAL = "short_partial"


class TransactionType(str, Enum):
    """Ledger events. Each one produces exactly one Transaction."""
    BUY = "BUY"
    SELL = "SELL"
    SHORT = "SHORT"
    COVER = "COVER"
    TP1 = "TP1"
    TP2 = "TP2"
    TRAILING_STOP = "TRAILING_STOP"
    STOP_LOSS = "STOP_LOSS"
    COVER1 = "COVER1"
    COVER2 = "COVER2"
    COVER_SL = "COVER_SL"

    @property
    def is_entry(self) -> bool:
        return self in (TransactionType.BUY, TransactionType.SHORT)


class BlockReason(str, Enum):
    """Why an entry was not taken. Decisions, not errors."""
    INSUFFICIENT_DATA = "insufficient_data"
    TREND_NOT_CONFIRMED = "trend_not_confirmed"
    NO_SIGNAL = "no_signal"
    POSITION_EXISTS = "position_exists"
    TOO_MANY_POSITIONS = "too_many_positions"
    STALE_PRICE = "stale_price"
    LOW_VOLUME = "low_volume"
    BELOW_MIN_NOTIONAL = "below_min_notional"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_LEVELS = "invalid_levels"
    SHORTS_DISABLED = "shorts_disabled"


@dataclass(frozen=True)
class Candle:
    """
    OHLCV candle.
    """
    timestamp: datetime
    symbol: str  # e.g., "BTC/USDT"
    timeframe: str  # e.g., "15m", "1h", "4h", "1d"
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def __post_init__(self):
        """Validate candle data."""
        if self.timestamp.tzinfo is None:
            raise ValueError("Candle timestamp must be timezone-aware (UTC)")
        if self.high < self.low:
            raise ValueError(f"Invalid candle: high ({self.high}) < low ({self.low})")
        if self.high < max(self.open, self.close) or self.low > min(self.open, self.close):
            raise ValueError("Invalid candle: OHLC values inconsistent")


@dataclass(frozen=True)
class Ticker:
    """Latest ticker snapshot used for pre-trade validation."""
    symbol: str
    last: Decimal
    base_volume: Optional[Decimal] = None
    quote_volume: Optional[Decimal] = None

    def effective_quote_volume(self) -> Optional[Decimal]:
        """Quote volume, or base volume valued at last price when the exchange omits it."""
        if self.quote_volume is not None:
            return self.quote_volume
        if self.base_volume is not None:
            return self.base_volume * self.last
        return None


@dataclass(frozen=True)
class CloudPoint:
    """One Ichimoku point, with the spans that sit under the current candle."""
    conversion: Decimal
    base: Decimal
    span_a: Decimal
    span_b: Decimal


# ============ TRADE INTENTS ============

@dataclass(frozen=True)
class EnterLong:
    strategy: str
    reason: str = ""


@dataclass(frozen=True)
class ExitLong:
    strategy: str
    reason: str = ""


@dataclass(frozen=True)
class EnterShort:
    strategy: str
    reason: str = ""


@dataclass(frozen=True)
class NoAction:
    reason: str = "no_signal"


TradeIntent = Union[EnterLong, ExitLong, EnterShort, NoAction]


# ============ LEDGER STATE ============

@dataclass
class Position:
    """
    Open simulated position.

    Long:  stop_loss < entry_price < take_profit_1 <= take_profit_2
    Short: stop_loss > entry_price > take_profit_1 >= take_profit_2

    `peak_price` is the highest price seen for a long and the lowest for a
    short. `entry_cost` is the quote currency committed at entry (the amount
    paid for a long, the collateral locked for a short).
    """
    symbol: str
    side: Side
    entry_price: Decimal
    quantity: Decimal
    atr_at_entry: Decimal
    stop_loss: Decimal
    trailing_stop: Decimal
    take_profit_1: Decimal
    take_profit_2: Decimal
    entry_cost: Decimal
    strategy_tag: str
    peak_price: Optional[Decimal] = None
    original_quantity: Optional[Decimal] = None
    tp1_filled: bool = False
    realized_pnl: Decimal = Decimal("0")
    last_price: Optional[Decimal] = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError("Position quantity must be positive")
        if self.peak_price is None:
            self.peak_price = self.entry_price
        if self.original_quantity is None:
            self.original_quantity = self.quantity
        if self.last_price is None:
            self.last_price = self.entry_price
        if self.side == Side.LONG:
            ordered = self.stop_loss < self.entry_price < self.take_profit_1 <= self.take_profit_2
        else:
            ordered = self.stop_loss > self.entry_price > self.take_profit_1 >= self.take_profit_2
        if not ordered:
            raise ValueError(
                f"Invalid {self.side.value} levels: sl={self.stop_loss} entry={self.entry_price} "
                f"tp1={self.take_profit_1} tp2={self.take_profit_2}"
            )

    @property
    def asset(self) -> str:
        return self.symbol.split("/")[0]

    @property
    def is_long(self) -> bool:
        return self.side == Side.LONG

    @property
    def closed_quantity(self) -> Decimal:
        return self.original_quantity - self.quantity

    @property
    def phase(self) -> PositionPhase:
        if self.is_long:
            return PositionPhase.LONG_PARTIAL if self.tp1_filled else PositionPhase.LONG_OPEN
        return PositionPhase.SHORT_PARTIAL if self.tp1_filled else PositionPhase.SHORT_OPEN

    def reached(self, price: Decimal, level: Decimal) -> bool:
        """True if price has reached a profit target in the position's favour."""
        return price >= level if self.is_long else price <= level

    def breached(self, price: Decimal, level: Decimal) -> bool:
        """True if price has crossed a stop against the position."""
        return price <= level if self.is_long else price >= level

    def improves_peak(self, price: Decimal) -> bool:
        return price > self.peak_price if self.is_long else price < self.peak_price

    def cost_share(self, quantity: Decimal) -> Decimal:
        """Portion of entry_cost attributable to `quantity`."""
        return self.entry_cost * quantity / self.original_quantity

    def market_value(self, price: Decimal) -> Decimal:
        """Mark-to-market contribution to portfolio equity (before exit fees)."""
        if self.is_long:
            return self.quantity * price
        return self.cost_share(self.quantity) + self.quantity * (self.entry_price - price)

    def unrealized_pnl(self, price: Decimal, fee_rate: Decimal) -> Decimal:
        """P&L of closing the remaining quantity at `price`, fees included."""
        if self.is_long:
            return self.quantity * price * (1 - fee_rate) - self.cost_share(self.quantity)
        return self.cost_share(self.quantity) * (1 - fee_rate) - self.quantity * price * (1 + fee_rate)

    def to_dict(self, fee_rate: Optional[Decimal] = None) -> Dict[str, Any]:
        data = {
            "symbol": self.symbol,
            "side": self.side.value,
            "phase": self.phase.value,
            "entry_price": str(self.entry_price),
            "quantity": str(self.quantity),
            "original_quantity": str(self.original_quantity),
            "atr_at_entry": str(self.atr_at_entry),
            "stop_loss": str(self.stop_loss),
            "trailing_stop": str(self.trailing_stop),
            "peak_price": str(self.peak_price),
            "take_profit_1": str(self.take_profit_1),
            "take_profit_2": str(self.take_profit_2),
            "tp1_filled": self.tp1_filled,
            "entry_cost": str(self.entry_cost),
            "realized_pnl": str(self.realized_pnl),
            "last_price": str(self.last_price),
            "strategy_tag": self.strategy_tag,
            "opened_at": self.opened_at.isoformat(),
        }
        if fee_rate is not None:
            data["unrealized_pnl"] = str(self.unrealized_pnl(self.last_price, fee_rate))
        return data


@dataclass(frozen=True)
class Transaction:
    """
    Immutable ledger event, appended once and never mutated.

    `quote_delta` is the change applied to the quote balance; summing it
    over history reconciles the balance with initial capital.
    """
    timestamp: datetime
    symbol: str
    type: TransactionType
    amount: Decimal
    price: Decimal
    pnl: Optional[Decimal]
    quote_delta: Decimal
    portfolio: Dict[str, str]
    strategy_tag: str
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "symbol": self.symbol,
            "type": self.type.value,
            "amount": str(self.amount),
            "price": str(self.price),
            "pnl": str(self.pnl) if self.pnl is not None else None,
            "quote_delta": str(self.quote_delta),
            "portfolio": dict(self.portfolio),
            "strategy_tag": self.strategy_tag,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        pnl = data.get("pnl")
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            symbol=data["symbol"],
            type=TransactionType(data["type"]),
            amount=Decimal(str(data["amount"])),
            price=Decimal(str(data["price"])),
            pnl=Decimal(str(pnl)) if pnl is not None else None,
            quote_delta=Decimal(str(data.get("quote_delta", "0"))),
            portfolio=dict(data.get("portfolio") or {}),
            strategy_tag=data.get("strategy_tag", ""),
            reason=data.get("reason", ""),
        )


@dataclass
class Metrics:
    """Running counters, mutated only by the ledger and the drawdown guard."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    tp1_fills: int = 0
    current_drawdown: Decimal = Decimal("0")
    max_drawdown: Decimal = Decimal("0")
    cycles: int = 0

    @property
    def closed_trades(self) -> int:
        return self.winning_trades + self.losing_trades

    @property
    def win_rate(self) -> float:
        if not self.closed_trades:
            return 0.0
        return self.winning_trades / self.closed_trades * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "tp1_fills": self.tp1_fills,
            "win_rate": round(self.win_rate, 2),
            "current_drawdown": str(self.current_drawdown),
            "max_drawdown": str(self.max_drawdown),
            "cycles": self.cycles,
        }


@dataclass
class SizingDecision:
    """
    Risk sizer output for a proposed entry.
    """
    approved: bool
    position_value: Decimal
    quantity: Decimal
    risk_pct: Decimal
    stop_loss: Optional[Decimal] = None
    trailing_stop: Optional[Decimal] = None
    take_profit_1: Optional[Decimal] = None
    take_profit_2: Optional[Decimal] = None
    rejection_reason: Optional[BlockReason] = None
