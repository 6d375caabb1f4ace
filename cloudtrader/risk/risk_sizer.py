"""
Position sizing and stop/target derivation.

Sizing is a fixed percentage of the quote balance, halved (by default) in
high-ATR regimes. Levels are ATR multiples with percentage floors so that
TP1 always clears round-trip fees plus a minimum profit.
"""
from decimal import Decimal
from typing import Optional, Tuple

from cloudtrader.config.config import RiskConfig
from cloudtrader.constants import HUNDRED, ONE, ZERO
from cloudtrader.domain.models import BlockReason, SizingDecision, Side
from cloudtrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def _d(value) -> Decimal:
    return Decimal(str(value))


class RiskSizer:
    """
    Converts balance, volatility and configured risk into a sized entry.
    """

    def __init__(self, config: RiskConfig):
        self.config = config
        self.base_risk = _d(config.risk_percentage)
        self.atr_threshold = _d(config.atr_threshold)
        self.risk_reduction = _d(config.risk_reduction_factor)
        self.min_trade_value = _d(config.min_trade_value)
        self.fee_rate = _d(config.fee_rate)
        self.sl_mult = _d(config.stop_loss_atr_multiplier)
        self.trail_mult = _d(config.trailing_atr_multiplier)
        self.min_profit = _d(config.min_profit_pct)
        self.big_profit = _d(config.big_profit_pct)

    def dynamic_risk(self, atr: Decimal, risk_override: Optional[Decimal] = None) -> Decimal:
        """Risk percentage after the volatility throttle."""
        base = risk_override if risk_override is not None else self.base_risk
        if atr > self.atr_threshold:
            return base * self.risk_reduction
        return base

    def derive_levels(self, side: Side, price: Decimal, atr: Decimal) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
        """
        Stop and target levels for an entry at `price`.

        Returns:
            (stop_loss, trailing_stop, take_profit_1, take_profit_2)
        """
        tp1_pct = self.min_profit + 2 * self.fee_rate
        if side == Side.LONG:
            stop_loss = price - self.sl_mult * atr
            trailing = price - self.trail_mult * atr
            tp1 = max(price * (ONE + tp1_pct), price + atr)
            tp2 = max(price * (ONE + self.big_profit), price + 2 * atr)
        else:
            stop_loss = price + self.sl_mult * atr
            trailing = price + self.trail_mult * atr
            tp1 = min(price * (ONE - tp1_pct), price - atr)
            tp2 = min(price * (ONE - self.big_profit), price - 2 * atr)
        return stop_loss, trailing, tp1, tp2

    def size(
        self,
        side: Side,
        balance: Decimal,
        price: Decimal,
        atr: Decimal,
        risk_override: Optional[Decimal] = None,
    ) -> SizingDecision:
        """
        Size an entry. `quantity` is before fees; the ledger applies them on fill.
        """
        risk_pct = self.dynamic_risk(atr, risk_override)
        position_value = balance * risk_pct / HUNDRED

        def reject(reason: BlockReason) -> SizingDecision:
            logger.info(
                "Sizing rejected",
                side=side.value,
                reason=reason.value,
                position_value=str(position_value),
                balance=str(balance),
            )
            return SizingDecision(
                approved=False,
                position_value=position_value,
                quantity=ZERO,
                risk_pct=risk_pct,
                rejection_reason=reason,
            )

        if price <= 0:
            return reject(BlockReason.INVALID_LEVELS)
        if position_value < self.min_trade_value:
            return reject(BlockReason.BELOW_MIN_NOTIONAL)
        if balance < position_value:
            return reject(BlockReason.INSUFFICIENT_BALANCE)

        stop_loss, trailing, tp1, tp2 = self.derive_levels(side, price, atr)
        if side == Side.LONG:
            ordered = stop_loss < price < tp1 <= tp2 and trailing < price
        else:
            ordered = stop_loss > price > tp1 >= tp2 and trailing > price
        if not ordered or stop_loss <= 0 or tp1 <= 0:
            return reject(BlockReason.INVALID_LEVELS)

        return SizingDecision(
            approved=True,
            position_value=position_value,
            quantity=position_value / price,
            risk_pct=risk_pct,
            stop_loss=stop_loss,
            trailing_stop=trailing,
            take_profit_1=tp1,
            take_profit_2=tp2,
        )
