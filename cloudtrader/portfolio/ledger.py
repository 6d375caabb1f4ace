"""
Position ledger: the per-asset state machine.

    FLAT -> LONG_OPEN -> LONG_PARTIAL -> FLAT
    FLAT -> SHORT_OPEN -> SHORT_PARTIAL -> FLAT

Owns open positions (at most one per asset, long or short), applies
entries, staged exits and trailing updates, and is the only writer of the
portfolio and the trade counters. Every mutation emits exactly one
Transaction.

Cash conventions (fee applied on every conversion):
    long entry   quote -= value, quantity = value / price * (1 - fee)
    long exit    quote += q * p * (1 - fee)
    short entry  quote -= value (collateral), quantity = value / price
    short cover  quote += share + pnl, pnl = share * (1 - fee) - q * p * (1 + fee)
where share is the entry cost attributable to the covered quantity.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from cloudtrader.config.config import RiskConfig
from cloudtrader.constants import DUST_QUANTITY, ONE, ZERO
from cloudtrader.domain.models import (
    BlockReason,
    Metrics,
    Position,
    PositionPhase,
    Side,
    Transaction,
    TransactionType,
)
from cloudtrader.domain.protocols import NullTransactionSink, TransactionSink
from cloudtrader.exceptions import InvariantError
from cloudtrader.monitoring.logger import get_logger
from cloudtrader.portfolio.portfolio import Portfolio
from cloudtrader.risk.risk_sizer import RiskSizer

logger = get_logger(__name__)


_EXIT_TYPES = {
    # (long, short)
    "tp1": (TransactionType.TP1, TransactionType.COVER1),
    "tp2": (TransactionType.TP2, TransactionType.COVER2),
    "trailing": (TransactionType.TRAILING_STOP, TransactionType.TRAILING_STOP),
    "stop": (TransactionType.STOP_LOSS, TransactionType.COVER_SL),
    "close": (TransactionType.SELL, TransactionType.COVER),
}


@dataclass(frozen=True)
class EntryResult:
    accepted: bool
    reason: Optional[BlockReason] = None
    transaction: Optional[Transaction] = None
    position: Optional[Position] = None


def asset_of(symbol: str) -> str:
    return symbol.split("/")[0]


class PositionLedger:
    """
    Single source of truth for open positions and realised P&L.
    """

    def __init__(
        self,
        config: RiskConfig,
        portfolio: Portfolio,
        metrics: Metrics,
        *,
        sizer: Optional[RiskSizer] = None,
        sink: Optional[TransactionSink] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.portfolio = portfolio
        self.metrics = metrics
        self.sizer = sizer or RiskSizer(config)
        self.sink = sink or NullTransactionSink()
        self._now = now

        self.fee_rate = Decimal(str(config.fee_rate))
        self.trail_mult = Decimal(str(config.trailing_atr_multiplier))
        self.tp1_fraction = Decimal(str(config.tp1_close_fraction))
        self.max_positions = config.max_positions

        self.positions: Dict[str, Position] = {}  # keyed by asset

    # ============ READ ============

    def get(self, symbol: str) -> Optional[Position]:
        return self.positions.get(asset_of(symbol))

    def state(self, symbol: str) -> PositionPhase:
        position = self.get(symbol)
        return position.phase if position else PositionPhase.FLAT

    def has_long(self, symbol: str) -> bool:
        position = self.get(symbol)
        return position is not None and position.is_long

    def has_short(self, symbol: str) -> bool:
        position = self.get(symbol)
        return position is not None and not position.is_long

    @property
    def open_count(self) -> int:
        return len(self.positions)

    def longs(self) -> List[Position]:
        return [p for p in self.positions.values() if p.is_long]

    def shorts(self) -> List[Position]:
        return [p for p in self.positions.values() if not p.is_long]

    def mark(self, symbol: str, price: Decimal) -> None:
        """Record the latest observed price for mark-to-market equity."""
        position = self.get(symbol)
        if position is not None:
            position.last_price = price

    def equity(self) -> Decimal:
        return self.portfolio.equity(self.positions.values())

    # ============ ENTRY ============

    async def open_position(
        self,
        symbol: str,
        side: Side,
        price: Decimal,
        atr: Decimal,
        strategy_tag: str,
        *,
        risk_override: Optional[Decimal] = None,
        reason: str = "",
    ) -> EntryResult:
        """
        Size and open a position, or return the reason it was blocked.

        Holds the portfolio lock across the balance check and the debit.

        `risk_override` replaces the configured risk percentage for this entry
        only (the volatility throttle still applies). The cycle never passes
        it; it is for callers driving the ledger directly.
        """
        async with self.portfolio.lock:
            asset = asset_of(symbol)
            if asset in self.positions:
                return self._blocked(symbol, BlockReason.POSITION_EXISTS)
            if self.open_count >= self.max_positions:
                return self._blocked(symbol, BlockReason.TOO_MANY_POSITIONS)

            decision = self.sizer.size(side, self.portfolio.quote_balance, price, atr, risk_override)
            if not decision.approved:
                return self._blocked(symbol, decision.rejection_reason)

            value = decision.position_value
            if side == Side.LONG:
                quantity = decision.quantity * (ONE - self.fee_rate)
                base_delta = quantity
                tx_type = TransactionType.BUY
            else:
                quantity = decision.quantity
                base_delta = -quantity
                tx_type = TransactionType.SHORT

            position = Position(
                symbol=symbol,
                side=side,
                entry_price=price,
                quantity=quantity,
                atr_at_entry=atr,
                stop_loss=decision.stop_loss,
                trailing_stop=decision.trailing_stop,
                take_profit_1=decision.take_profit_1,
                take_profit_2=decision.take_profit_2,
                entry_cost=value,
                strategy_tag=strategy_tag,
                opened_at=self._now(),
            )

            self.portfolio.adjust(asset, -value, base_delta)
            self.positions[asset] = position
            self.metrics.total_trades += 1
            tx = self._emit(symbol, tx_type, quantity, price, None, -value, strategy_tag, reason)

            logger.info(
                "Position opened",
                symbol=symbol,
                side=side.value,
                strategy=strategy_tag,
                price=str(price),
                quantity=str(quantity),
                value=str(value),
                stop_loss=str(position.stop_loss),
                trailing_stop=str(position.trailing_stop),
                tp1=str(position.take_profit_1),
                tp2=str(position.take_profit_2),
            )
            return EntryResult(accepted=True, transaction=tx, position=position)

    def _blocked(self, symbol: str, reason: BlockReason) -> EntryResult:
        logger.info("Entry blocked", symbol=symbol, reason=reason.value)
        return EntryResult(accepted=False, reason=reason)

    # ============ EXITS ============

    def evaluate_exits(self, symbol: str, price: Decimal, atr: Optional[Decimal] = None) -> List[Transaction]:
        """
        Run the exit sequence for an open position.

        Order: TP1 partial, TP2, trailing update, trailing breach, hard stop.
        Re-running with an unchanged price is a no-op.
        """
        position = self.get(symbol)
        if position is None:
            return []

        position.last_price = price
        transactions: List[Transaction] = []

        # 1. Partial take-profit, counted as a win when filled
        if not position.tp1_filled and position.reached(price, position.take_profit_1):
            quantity = position.quantity * self.tp1_fraction
            position.tp1_filled = True
            self.metrics.tp1_fills += 1
            self.metrics.winning_trades += 1
            transactions.append(self._fill(position, quantity, price, "tp1", "take_profit_1"))

        # 2. Full take-profit
        if position.tp1_filled and position.quantity > 0 and position.reached(price, position.take_profit_2):
            transactions.append(self._fill(position, position.quantity, price, "tp2", "take_profit_2"))
            return transactions

        # 3. Trailing stop update
        if position.improves_peak(price):
            self.update_trailing_stop(position, price, atr if atr else position.atr_at_entry)

        # 4. Trailing stop breach
        if position.breached(price, position.trailing_stop):
            transactions.append(self._fill(position, position.quantity, price, "trailing", "trailing_stop"))
            return transactions

        # 5. Hard stop-loss
        if position.breached(price, position.stop_loss):
            transactions.append(self._fill(position, position.quantity, price, "stop", "stop_loss"))

        return transactions

    def update_trailing_stop(self, position: Position, price: Decimal, atr: Decimal) -> None:
        """Ratchet peak and trailing stop. The stop never moves against the position."""
        if not position.improves_peak(price):
            return
        position.peak_price = price
        if position.is_long:
            candidate = price - self.trail_mult * atr
            if candidate > position.trailing_stop:
                position.trailing_stop = candidate
        else:
            candidate = price + self.trail_mult * atr
            if candidate < position.trailing_stop:
                position.trailing_stop = candidate
        logger.debug(
            "Trailing stop updated",
            symbol=position.symbol,
            peak=str(position.peak_price),
            trailing_stop=str(position.trailing_stop),
        )

    def close_position(self, symbol: str, price: Decimal, reason: str = "manual") -> Optional[Transaction]:
        """Liquidate the whole position (force-close or signal exit)."""
        position = self.get(symbol)
        if position is None:
            return None
        position.last_price = price
        return self._fill(position, position.quantity, price, "close", reason)

    def _fill(self, position: Position, quantity: Decimal, price: Decimal, kind: str, reason: str) -> Transaction:
        if quantity <= 0 or quantity > position.quantity:
            raise InvariantError(
                f"Invalid exit quantity {quantity} for {position.symbol} (open {position.quantity})"
            )

        share = position.cost_share(quantity)
        if position.is_long:
            proceeds = quantity * price * (ONE - self.fee_rate)
            pnl = proceeds - share
            quote_delta = proceeds
            base_delta = -quantity
        else:
            pnl = share * (ONE - self.fee_rate) - quantity * price * (ONE + self.fee_rate)
            quote_delta = share + pnl
            base_delta = quantity

        long_type, short_type = _EXIT_TYPES[kind]
        tx_type = long_type if position.is_long else short_type

        position.quantity -= quantity
        position.realized_pnl += pnl
        if position.closed_quantity + position.quantity != position.original_quantity:
            raise InvariantError(f"Quantity not conserved for {position.symbol}")

        self.portfolio.adjust(position.asset, quote_delta, base_delta)
        fully_closed = position.quantity <= DUST_QUANTITY
        if fully_closed:
            del self.positions[position.asset]
            if position.realized_pnl > ZERO:
                self.metrics.winning_trades += 1
            else:
                self.metrics.losing_trades += 1

        tx = self._emit(position.symbol, tx_type, quantity, price, pnl, quote_delta, position.strategy_tag, reason)

        logger.info(
            "Position reduced" if not fully_closed else "Position closed",
            symbol=position.symbol,
            type=tx_type.value,
            reason=reason,
            price=str(price),
            quantity=str(quantity),
            pnl=str(pnl),
            remaining=str(position.quantity) if not fully_closed else "0",
            realized_pnl=str(position.realized_pnl),
        )
        return tx

    def _emit(
        self,
        symbol: str,
        tx_type: TransactionType,
        amount: Decimal,
        price: Decimal,
        pnl: Optional[Decimal],
        quote_delta: Decimal,
        strategy_tag: str,
        reason: str,
    ) -> Transaction:
        tx = Transaction(
            timestamp=self._now(),
            symbol=symbol,
            type=tx_type,
            amount=amount,
            price=price,
            pnl=pnl,
            quote_delta=quote_delta,
            portfolio=self.portfolio.snapshot(),
            strategy_tag=strategy_tag,
            reason=reason,
        )
        self.portfolio.record(tx)
        self.portfolio.reconcile()
        self.sink.append(tx)
        return tx
